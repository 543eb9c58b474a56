from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .classifier import classify, is_purchase_like_category
from .models import (
    SIGNUP_CATEGORY,
    CommissionRule,
    EventMetadata,
    EventUnionMap,
    RawLifecycleEvent,
    ReferralCodeSource,
    UserEventSource,
)


def format_event_name_for_display(event_name: str) -> str:
    """``"3_meals_logged"`` -> ``"3 Meals Logged"``."""

    return " ".join(word[:1].upper() + word[1:] for word in event_name.split("_"))


def _add_first(union: EventUnionMap, event_name: str, display_name: Optional[str]) -> None:
    if not event_name or event_name in union:
        return
    union[event_name] = EventMetadata(
        display_name=display_name or format_event_name_for_display(event_name),
        is_purchase_type=is_purchase_like_category(event_name),
    )


def effective_rules(
    code: ReferralCodeSource,
    default_rules: Sequence[CommissionRule] = (),
) -> Sequence[CommissionRule]:
    return tuple(code.commission_rules) or tuple(default_rules)


def build_union_schema(
    rule_sets: Iterable[Sequence[CommissionRule]],
    observed_events: Iterable[RawLifecycleEvent] = (),
    include_signup: bool = True,
) -> EventUnionMap:
    """
    Build the ordered, de-duplicated set of event columns.

    Commission rules are scanned first, then observed events. The first
    occurrence of an event name fixes its display name; later occurrences are
    ignored. ``signup`` is appended when nothing else declared it.
    """

    union: EventUnionMap = {}
    for rules in rule_sets:
        for rule in rules:
            _add_first(union, rule.event, rule.display_name)

    for event in observed_events:
        category = classify(event)
        if category is None:
            continue
        display_name = event.attributes.get("display_name")
        _add_first(union, category, display_name if isinstance(display_name, str) else None)

    if include_signup:
        _add_first(union, SIGNUP_CATEGORY, "Signups")
    return union


def build_union_schema_for_codes(
    codes: Sequence[ReferralCodeSource],
    users: Sequence[UserEventSource] = (),
    default_rules: Sequence[CommissionRule] = (),
) -> EventUnionMap:
    rule_sets = [effective_rules(code, default_rules) for code in codes]
    observed = (event for user in users for event in user.events)
    return build_union_schema(rule_sets, observed)

