from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Union

from .classifier import classify
from .ingestion import to_date_key, to_datetime
from .models import SIGNUP_CATEGORY, EventUnionMap, RawLifecycleEvent, TimeSeriesPoint, UserEventSource, user_key

DateLike = Union[date, datetime, str]

DEFAULT_LOOKBACK_DAYS = 30


def first_occurrences(events: Iterable[RawLifecycleEvent]) -> Dict[str, str]:
    """
    Date of the first event in each category for a single user.

    Events are visited in timestamp order; the sort is stable so ties keep
    their delivery order.
    """

    firsts: Dict[str, str] = {}
    for event in sorted(events, key=lambda item: item.event_timestamp_ms):
        category = classify(event)
        if category is None or category in firsts:
            continue
        date_key = to_date_key(event.event_timestamp_ms)
        if date_key is not None:
            firsts[category] = date_key
    return firsts


def _daterange(start: date, end: date) -> Iterable[date]:
    cursor = start
    while cursor <= end:
        yield cursor
        cursor += timedelta(days=1)


def _coerce_date(value: Optional[DateLike]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = to_datetime(value)
    return dt.date() if dt is not None else None


def resolve_date_range(
    observed_dates: Iterable[str],
    start_date: Optional[DateLike] = None,
    end_date: Optional[DateLike] = None,
    today: Optional[date] = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> tuple:
    today = today or datetime.now(timezone.utc).date()
    start = _coerce_date(start_date)
    if start is None:
        earliest = min(observed_dates, default=None)
        start = date.fromisoformat(earliest) if earliest else today - timedelta(days=lookback_days)
    end = _coerce_date(end_date) or today
    return start, end


def build_time_series(
    users: Sequence[UserEventSource],
    union_schema: EventUnionMap,
    start_date: Optional[DateLike] = None,
    end_date: Optional[DateLike] = None,
    today: Optional[date] = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> List[TimeSeriesPoint]:
    """
    Build a zero-filled daily series of first-time conversions.

    Each user contributes at most once per category, on the date of their
    first event in it. Signups come from ``referral_created_at`` rather than
    the event stream. Every date in ``[start, end]`` is present, and every
    union-schema category is present on every date.
    """

    counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    seen: Dict[str, Dict[str, Set[Hashable]]] = defaultdict(lambda: defaultdict(set))

    def _record(date_key: str, category: str, key: Hashable) -> None:
        users_on_date = seen[date_key][category]
        if key in users_on_date:
            return
        users_on_date.add(key)
        counts[date_key][category] += 1

    for index, user in enumerate(users):
        key = user_key(user, index)
        signup_key = to_date_key(user.referral_created_at)
        if signup_key is not None:
            _record(signup_key, SIGNUP_CATEGORY, key)
        for category, date_key in first_occurrences(user.events).items():
            _record(date_key, category, key)

    start, end = resolve_date_range(
        counts.keys(),
        start_date=start_date,
        end_date=end_date,
        today=today,
        lookback_days=lookback_days,
    )

    categories = list(union_schema)
    if SIGNUP_CATEGORY not in union_schema:
        categories.append(SIGNUP_CATEGORY)

    points = []
    for day in _daterange(start, end):
        date_key = day.isoformat()
        day_counts = counts.get(date_key, {})
        points.append(
            TimeSeriesPoint(
                date=date_key,
                event_counts={category: day_counts.get(category, 0) for category in categories},
            )
        )
    return sorted(points, key=lambda point: point.date)
