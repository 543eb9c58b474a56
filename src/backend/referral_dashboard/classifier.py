from __future__ import annotations

from typing import Optional

from .models import FREE_TRIAL_CATEGORY, NAMED_SOURCE, PURCHASE_CATEGORY, RawLifecycleEvent

PURCHASE_LIKE_CATEGORIES = {
    "purchase",
    "free_trial",
    "subscription",
    "renewal",
}


def classify(event: RawLifecycleEvent) -> Optional[str]:
    """
    Map a lifecycle event to its commission category, or ``None`` to exclude it.

    Named events already carry their category. RevenueCat events follow the
    trial/purchase rules; renewals always land in the paid bucket.
    """

    if event.source == NAMED_SOURCE:
        return event.type or None
    if event.type == "INITIAL_PURCHASE" and event.period_type == "TRIAL":
        return FREE_TRIAL_CATEGORY
    if event.type == "INITIAL_PURCHASE" and event.period_type == "NORMAL":
        return PURCHASE_CATEGORY
    if event.type == "RENEWAL":
        return PURCHASE_CATEGORY
    return None


def is_purchase_like_category(name: str) -> bool:
    return name.lower() in PURCHASE_LIKE_CATEGORIES
