from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .models import NAMED_SOURCE, REVENUECAT_SOURCE, RawLifecycleEvent

logger = logging.getLogger(__name__)

REVENUECAT_EVENT_TYPES = {
    "INITIAL_PURCHASE",
    "RENEWAL",
    "CANCELLATION",
    "UNCANCELLATION",
    "NON_RENEWING_PURCHASE",
    "SUBSCRIPTION_PAUSED",
    "EXPIRATION",
    "BILLING_ISSUE",
    "PRODUCT_CHANGE",
    "TRANSFER",
}
TIMESTAMP_FIELDS = (
    "purchased_at_ms",
    "event_timestamp_ms",
    "timestamp",
    "date",
    "createdAt",
    "created_at",
)
USER_ID_FIELDS = ("app_user_id", "original_app_user_id", "user_id", "userId")
_RESERVED_FIELDS = {"type", "commission_event_name", "period_type", "price", "currency"}


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce epoch milliseconds, ISO-8601 strings, dates or datetimes to an
    aware UTC datetime. Returns ``None`` for anything unparseable.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.lstrip("-").isdigit():
            return to_datetime(int(raw))
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return to_datetime(datetime.fromisoformat(raw))
        except ValueError:
            return None
    return None


def to_date_key(value: Any) -> Optional[str]:
    dt = to_datetime(value)
    if dt is None:
        return None
    return dt.date().isoformat()


def to_timestamp_ms(value: Any) -> Optional[int]:
    dt = to_datetime(value)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def detect_source(payload: Mapping[str, Any]) -> str:
    if payload.get("commission_event_name"):
        return NAMED_SOURCE
    if payload.get("type") in REVENUECAT_EVENT_TYPES:
        return REVENUECAT_SOURCE
    if "purchased_at_ms" in payload or "period_type" in payload:
        return REVENUECAT_SOURCE
    return NAMED_SOURCE


def normalize_event(payload: Any, user_id: Optional[str] = None) -> Optional[RawLifecycleEvent]:
    """
    Validate a raw event payload and normalise it to ``RawLifecycleEvent``.

    Returns ``None`` when the payload fails the type guard: not a mapping, no
    event type, no resolvable timestamp, or a non-numeric ``price``.
    """

    if isinstance(payload, RawLifecycleEvent):
        return payload
    if not isinstance(payload, Mapping):
        logger.debug("Dropping non-mapping event payload: %r", payload)
        return None

    source = detect_source(payload)
    if source == NAMED_SOURCE:
        event_type = payload.get("commission_event_name") or payload.get("type")
    else:
        event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        logger.debug("Dropping event without a type: %r", payload)
        return None

    timestamp_ms = None
    for name in TIMESTAMP_FIELDS:
        timestamp_ms = to_timestamp_ms(payload.get(name))
        if timestamp_ms is not None:
            break
    if timestamp_ms is None:
        logger.debug("Dropping %s event without a usable timestamp", event_type)
        return None

    price = payload.get("price")
    if price is not None and not _is_number(price):
        logger.debug("Dropping %s event with non-numeric price %r", event_type, price)
        return None

    owner = user_id
    if owner is None:
        owner = next((str(payload[name]) for name in USER_ID_FIELDS if payload.get(name)), None)

    period_type = payload.get("period_type")
    return RawLifecycleEvent(
        type=event_type,
        event_timestamp_ms=timestamp_ms,
        source=source,
        period_type=period_type if isinstance(period_type, str) else None,
        price=float(price) if price is not None else None,
        currency=payload.get("currency"),
        user_id=owner,
        attributes={key: value for key, value in payload.items() if key not in _RESERVED_FIELDS},
    )


def parse_event_payload(value: Any) -> List[Any]:
    """
    Turn a serialized purchase-history ``event`` field into a list of payloads.

    The field can hold an already decoded list, a single object, or a JSON
    string of either. A corrupt string is logged and treated as empty.
    """

    if value is None:
        return []
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse purchase events payload: %s", exc)
            return []
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return [value]
    return []


def normalize_events(payloads: Iterable[Any], user_id: Optional[str] = None) -> Sequence[RawLifecycleEvent]:
    events = []
    for payload in payloads:
        event = normalize_event(payload, user_id=user_id)
        if event is not None:
            events.append(event)
    return tuple(events)

