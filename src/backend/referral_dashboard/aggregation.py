from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from .classifier import classify
from .ingestion import to_date_key, to_datetime
from .models import (
    SIGNUP_CATEGORY,
    STATUS_ACTIVE,
    STATUS_EXHAUSTED,
    STATUS_INACTIVE,
    CommissionRule,
    DashboardStats,
    EarningsBreakdown,
    EventUnionMap,
    RawLifecycleEvent,
    ReferralCodeAggregate,
    ReferralCodeSource,
    UserEventSource,
    user_key,
)
from .schema import effective_rules

logger = logging.getLogger(__name__)

SORT_DIRECTIONS = {"asc", "desc"}


def count_user_conversions(events: Iterable[RawLifecycleEvent]) -> Dict[str, int]:
    """
    One-time commission model: each category counts at most once per user,
    however many of the user's events map to it.
    """

    categories = {category for event in events if (category := classify(event)) is not None}
    return {category: 1 for category in categories}


def group_users_by_code(users: Iterable[UserEventSource]) -> Dict[str, List[UserEventSource]]:
    grouped: Dict[str, List[UserEventSource]] = defaultdict(list)
    for user in users:
        if user.referral_code:
            grouped[user.referral_code].append(user)
    return grouped


def _merge_user_events(users: Sequence[UserEventSource]) -> List[Sequence[RawLifecycleEvent]]:
    # The same user can be delivered more than once; merge so they still count once.
    merged: Dict[Hashable, List[RawLifecycleEvent]] = {}
    for index, user in enumerate(users):
        merged.setdefault(user_key(user, index), []).extend(user.events)
    return list(merged.values())


def count_code_conversions(users: Sequence[UserEventSource]) -> Counter:
    totals: Counter = Counter()
    for events in _merge_user_events(users):
        totals.update(count_user_conversions(events))
    return totals


def derive_status(
    code: ReferralCodeSource,
    total_conversions: int,
    referrals_count: int,
    now: Optional[datetime] = None,
) -> str:
    now = to_datetime(now) or datetime.now(timezone.utc)
    start = to_datetime(code.start_date)
    end = to_datetime(code.end_date)
    if (start is not None and now < start) or (end is not None and now > end):
        return STATUS_INACTIVE
    usage_count = max(total_conversions, referrals_count)
    if code.quota is not None and usage_count >= code.quota:
        return STATUS_EXHAUSTED
    return STATUS_ACTIVE


def calculate_earnings(
    counts: Mapping[str, int],
    rules: Sequence[CommissionRule],
    default_currency: str = "USD",
) -> EarningsBreakdown:
    breakdown: Dict[str, float] = {}
    currency = default_currency
    currencies = set()
    for rule in rules:
        breakdown[rule.event] = round(counts.get(rule.event, 0) * rule.rate, 2)
        currency = rule.currency
        currencies.add(rule.currency)

    mixed = len(currencies) > 1
    if mixed:
        logger.warning("Commission rules mix currencies %s; reporting %s", sorted(currencies), currency)
    return EarningsBreakdown(
        breakdown=breakdown,
        total=round(sum(breakdown.values()), 2),
        currency=currency,
        mixed_currency=mixed,
    )


def combine_earnings(
    earnings: Sequence[EarningsBreakdown],
    default_currency: str = "USD",
) -> EarningsBreakdown:
    breakdown: Dict[str, float] = defaultdict(float)
    currency = default_currency
    currencies = set()
    mixed = False
    for item in earnings:
        for event_name, amount in item.breakdown.items():
            breakdown[event_name] = round(breakdown[event_name] + amount, 2)
        if item.breakdown:
            currency = item.currency
            currencies.add(item.currency)
        mixed = mixed or item.mixed_currency

    return EarningsBreakdown(
        breakdown=dict(breakdown),
        total=round(sum(item.total for item in earnings), 2),
        currency=currency,
        mixed_currency=mixed or len(currencies) > 1,
    )


def aggregate_code(
    code: ReferralCodeSource,
    users: Sequence[UserEventSource],
    union_schema: EventUnionMap,
    default_rules: Sequence[CommissionRule] = (),
    default_currency: str = "USD",
    now: Optional[datetime] = None,
) -> ReferralCodeAggregate:
    counts = count_code_conversions(users)
    counts[SIGNUP_CATEGORY] = code.referrals_count
    conversions = {event_name: counts.get(event_name, 0) for event_name in union_schema}
    earnings = calculate_earnings(counts, effective_rules(code, default_rules), default_currency)
    return ReferralCodeAggregate(
        id=code.id,
        code=code.code,
        created_at=code.created_at,
        status=derive_status(code, sum(conversions.values()), code.referrals_count, now=now),
        referrals_count=code.referrals_count,
        conversions=conversions,
        earnings=earnings,
        quota=code.quota,
        start_date=code.start_date,
        end_date=code.end_date,
    )


def aggregate_codes(
    codes: Sequence[ReferralCodeSource],
    users: Sequence[UserEventSource],
    union_schema: EventUnionMap,
    default_rules: Sequence[CommissionRule] = (),
    default_currency: str = "USD",
    now: Optional[datetime] = None,
) -> List[ReferralCodeAggregate]:
    users_by_code = group_users_by_code(users)
    return [
        aggregate_code(
            code,
            users_by_code.get(code.code, []),
            union_schema,
            default_rules=default_rules,
            default_currency=default_currency,
            now=now,
        )
        for code in codes
    ]


def aggregate_global_totals(
    aggregates: Sequence[ReferralCodeAggregate],
    union_schema: EventUnionMap,
) -> Dict[str, int]:
    totals = {event_name: 0 for event_name in union_schema}
    for aggregate in aggregates:
        for event_name, count in aggregate.conversions.items():
            if event_name in totals:
                totals[event_name] += count
    return totals


def average_earnings_per_conversion(total_earnings: float, total_conversions: int) -> float:
    if total_conversions == 0:
        return 0.0
    return round(total_earnings / total_conversions, 2)


def build_dashboard_stats(
    aggregates: Sequence[ReferralCodeAggregate],
    union_schema: EventUnionMap,
    default_currency: str = "USD",
) -> DashboardStats:
    statuses = Counter(aggregate.status for aggregate in aggregates)
    event_conversions = aggregate_global_totals(aggregates, union_schema)
    total_conversions = sum(event_conversions.values())
    total_earnings = combine_earnings([aggregate.earnings for aggregate in aggregates], default_currency)
    return DashboardStats(
        total_referral_codes=len(aggregates),
        active_referral_codes=statuses[STATUS_ACTIVE],
        inactive_referral_codes=statuses[STATUS_INACTIVE],
        exhausted_referral_codes=statuses[STATUS_EXHAUSTED],
        total_conversions=total_conversions,
        total_referrals=sum(aggregate.referrals_count for aggregate in aggregates),
        event_conversions=event_conversions,
        total_earnings=total_earnings,
        average_earnings_per_conversion=average_earnings_per_conversion(total_earnings.total, total_conversions),
    )


def aggregate(
    codes: Sequence[ReferralCodeSource],
    users: Sequence[UserEventSource],
    union_schema: EventUnionMap,
    default_rules: Sequence[CommissionRule] = (),
    default_currency: str = "USD",
    now: Optional[datetime] = None,
) -> DashboardStats:
    aggregates = aggregate_codes(
        codes,
        users,
        union_schema,
        default_rules=default_rules,
        default_currency=default_currency,
        now=now,
    )
    return build_dashboard_stats(aggregates, union_schema, default_currency)


def revenue_from_events(events: Iterable[RawLifecycleEvent]) -> float:
    """Gross store revenue: trial purchases carry a zero price."""

    return round(sum(event.price or 0.0 for event in events if event.type == "INITIAL_PURCHASE"), 2)


def filter_by_referral_codes(
    codes: Sequence[ReferralCodeSource],
    selected: Sequence[str],
) -> List[ReferralCodeSource]:
    if not selected:
        return list(codes)
    selected_set = set(selected)
    return [code for code in codes if code.code in selected_set]


def _in_range(date_key: Optional[str], start: Optional[str], end: Optional[str]) -> bool:
    if date_key is None:
        return False
    if start is not None and date_key < start:
        return False
    if end is not None and date_key > end:
        return False
    return True


def filter_users_by_date_range(
    users: Sequence[UserEventSource],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[UserEventSource]:
    """
    Restrict each user to the events inside ``[start, end]`` (both inclusive).

    A signup timestamp outside the range is cleared so the signup is not
    attributed to the window.
    """

    if start is None and end is None:
        return list(users)
    start_key = start.isoformat() if start is not None else None
    end_key = end.isoformat() if end is not None else None

    filtered = []
    for user in users:
        events = tuple(
            event
            for event in user.events
            if _in_range(to_date_key(event.event_timestamp_ms), start_key, end_key)
        )
        created_at = user.referral_created_at
        if not _in_range(to_date_key(created_at), start_key, end_key):
            created_at = None
        filtered.append(replace(user, events=events, referral_created_at=created_at))
    return filtered


def count_signups_in_range(users: Sequence[UserEventSource]) -> Dict[str, int]:
    seen: Dict[str, set] = defaultdict(set)
    for index, user in enumerate(users):
        if user.referral_code and user.referral_created_at is not None:
            seen[user.referral_code].add(user_key(user, index))
    return {code: len(user_ids) for code, user_ids in seen.items()}


def search_codes(aggregates: Sequence[ReferralCodeAggregate], term: str) -> List[ReferralCodeAggregate]:
    needle = term.strip().lower()
    if not needle:
        return list(aggregates)
    return [aggregate for aggregate in aggregates if needle in aggregate.code.lower()]


def _sort_value(aggregate: ReferralCodeAggregate, key: str):
    value = getattr(aggregate, key)
    if isinstance(value, EarningsBreakdown):
        return value.total
    if isinstance(value, Mapping):
        return sum(value.values())
    if isinstance(value, datetime):
        return to_datetime(value)
    if value is None or isinstance(value, (int, float, str)):
        return value
    raise ValueError(f"Cannot sort by {key}")


def sort_codes(
    aggregates: Sequence[ReferralCodeAggregate],
    key: Optional[str],
    direction: str = "desc",
) -> List[ReferralCodeAggregate]:
    """
    Sort table rows by an aggregate attribute. Rows without a value always
    sort last, whichever the direction.
    """

    if key is None:
        return list(aggregates)
    if direction not in SORT_DIRECTIONS:
        raise ValueError(f"Unknown sort direction: {direction}")
    if not aggregates:
        return []
    if key.startswith("_") or not hasattr(aggregates[0], key):
        raise ValueError(f"Unknown sort key: {key}")

    present: List[Tuple[object, ReferralCodeAggregate]] = []
    missing: List[ReferralCodeAggregate] = []
    for aggregate in aggregates:
        value = _sort_value(aggregate, key)
        if value is None:
            missing.append(aggregate)
        else:
            present.append((value, aggregate))
    try:
        present.sort(key=lambda item: item[0], reverse=direction == "desc")
    except TypeError as exc:
        raise ValueError(f"Cannot sort by {key}") from exc
    return [aggregate for _, aggregate in present] + missing
