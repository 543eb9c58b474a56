from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Hashable, Iterable, Mapping, Optional, Sequence, Tuple

REVENUECAT_SOURCE = "revenuecat"
NAMED_SOURCE = "named"

SIGNUP_CATEGORY = "signup"
FREE_TRIAL_CATEGORY = "free_trial"
PURCHASE_CATEGORY = "purchase"

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RawLifecycleEvent:
    """
    One observed state change for a purchase or referral action.

    ``source`` is the discriminant between the RevenueCat-style payload
    (``type`` + ``period_type``) and the generalized named-event payload, in
    which ``type`` already holds the commission event name. ``attributes``
    keeps the opaque descriptive fields (product id, store, country, ...).
    """

    type: str
    event_timestamp_ms: int
    source: str = REVENUECAT_SOURCE
    period_type: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    user_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommissionRule:
    event: str
    rate: float
    currency: str = "USD"
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ReferralCodeSource:
    id: str
    code: str
    created_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    quota: Optional[int] = None
    referrals_count: int = 0
    commission_rules: Sequence[CommissionRule] = ()


@dataclass(frozen=True)
class UserEventSource:
    user_id: Optional[str]
    referral_code: Optional[str] = None
    referral_created_at: Optional[datetime] = None
    events: Sequence[RawLifecycleEvent] = ()


def user_key(user: UserEventSource, index: int) -> Hashable:
    """Identity used for de-duplication; users without an id never share one."""

    return user.user_id if user.user_id else ("anonymous", index)


@dataclass(frozen=True)
class EventMetadata:
    display_name: str
    is_purchase_type: bool


# Ordered by insertion; dict preserves first-seen order.
EventUnionMap = Dict[str, EventMetadata]


@dataclass(frozen=True)
class EarningsBreakdown:
    breakdown: Mapping[str, float] = field(default_factory=dict)
    total: float = 0.0
    currency: str = "USD"
    mixed_currency: bool = False


@dataclass(frozen=True)
class ReferralCodeAggregate:
    id: str
    code: str
    created_at: Optional[datetime]
    status: str
    referrals_count: int
    conversions: Mapping[str, int]
    earnings: EarningsBreakdown
    quota: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @property
    def total_conversions(self) -> int:
        return sum(self.conversions.values())

    @property
    def usage_count(self) -> int:
        return max(self.total_conversions, self.referrals_count)

    @property
    def trial_conversions(self) -> int:
        return self.conversions.get(FREE_TRIAL_CATEGORY, 0)

    @property
    def paid_conversions(self) -> int:
        return self.conversions.get(PURCHASE_CATEGORY, 0)


@dataclass(frozen=True)
class DashboardStats:
    total_referral_codes: int
    active_referral_codes: int
    inactive_referral_codes: int
    exhausted_referral_codes: int
    total_conversions: int
    total_referrals: int
    event_conversions: Mapping[str, int]
    total_earnings: EarningsBreakdown
    average_earnings_per_conversion: float = 0.0

    @property
    def trial_conversions(self) -> int:
        return self.event_conversions.get(FREE_TRIAL_CATEGORY, 0)

    @property
    def paid_conversions(self) -> int:
        return self.event_conversions.get(PURCHASE_CATEGORY, 0)


@dataclass(frozen=True)
class TimeSeriesPoint:
    date: str
    event_counts: Mapping[str, int]


@dataclass(frozen=True)
class UserSummary:
    user_id: Optional[str]
    signup_date: Optional[str]
    first_conversions: Mapping[str, str]
    revenue: float
    event_count: int


@dataclass(frozen=True)
class DashboardFilters:
    """
    Filters shared by the dashboard and the code drill-down.

    ``start_date`` and ``end_date`` are both inclusive. An empty
    ``referral_codes`` selection means every code. ``sort_key`` names a
    ``ReferralCodeAggregate`` attribute.
    """

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    referral_codes: Tuple[str, ...] = ()
    search: str = ""
    sort_key: Optional[str] = None
    sort_direction: str = "desc"

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None


@dataclass(frozen=True)
class CodeDetail:
    code: ReferralCodeAggregate
    users: Sequence[UserSummary]
    time_series: Sequence[TimeSeriesPoint]


@dataclass(frozen=True)
class DashboardResult:
    stats: DashboardStats
    codes: Sequence[ReferralCodeAggregate]
    time_series: Sequence[TimeSeriesPoint]
    union_schema: EventUnionMap

    def as_dict(self) -> Dict[str, Any]:
        """
        Convert the nested dataclasses into a JSON-serialisable structure.

        Keys follow the camelCase naming the frontend widgets read.
        """

        return {
            "stats": serialize(self.stats),
            "codes": [serialize(code) for code in self.codes],
            "timeSeries": [serialize(point) for point in self.time_series],
            "unionSchema": serialize_union_schema(self.union_schema),
        }


def serialize_union_schema(union_schema: EventUnionMap) -> list:
    return [
        {
            "eventName": name,
            "displayName": metadata.display_name,
            "isPurchaseType": metadata.is_purchase_type,
        }
        for name, metadata in union_schema.items()
    ]


def serialize(obj: Any) -> Any:
    if isinstance(obj, CodeDetail):
        return {
            "code": serialize(obj.code),
            "users": [serialize(user) for user in obj.users],
            "timeSeries": [serialize(point) for point in obj.time_series],
        }
    if isinstance(obj, DashboardStats):
        return {
            "totalReferralCodes": obj.total_referral_codes,
            "activeReferralCodes": obj.active_referral_codes,
            "inactiveReferralCodes": obj.inactive_referral_codes,
            "exhaustedReferralCodes": obj.exhausted_referral_codes,
            "totalConversions": obj.total_conversions,
            "totalReferrals": obj.total_referrals,
            "trialConversions": obj.trial_conversions,
            "paidConversions": obj.paid_conversions,
            "eventConversions": dict(obj.event_conversions),
            "totalEarnings": serialize(obj.total_earnings),
            "averageEarningsPerConversion": obj.average_earnings_per_conversion,
        }
    if isinstance(obj, ReferralCodeAggregate):
        return {
            "id": obj.id,
            "code": obj.code,
            "createdAt": serialize(obj.created_at),
            "status": obj.status,
            "quota": obj.quota,
            "startDate": serialize(obj.start_date),
            "endDate": serialize(obj.end_date),
            "referralsCount": obj.referrals_count,
            "conversions": obj.total_conversions,
            "eventConversions": dict(obj.conversions),
            "trialConversions": obj.trial_conversions,
            "paidConversions": obj.paid_conversions,
            "earnings": serialize(obj.earnings),
        }
    if isinstance(obj, EarningsBreakdown):
        return {
            "breakdown": dict(obj.breakdown),
            "total": obj.total,
            "currency": obj.currency,
            "mixedCurrency": obj.mixed_currency,
        }
    if isinstance(obj, TimeSeriesPoint):
        return {"date": obj.date, "eventCounts": dict(obj.event_counts)}
    if isinstance(obj, UserSummary):
        return {
            "userId": obj.user_id,
            "signupDate": obj.signup_date,
            "firstConversions": dict(obj.first_conversions),
            "revenue": obj.revenue,
            "eventCount": obj.event_count,
        }
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes, Mapping)):
        return [serialize(item) for item in obj]
    return obj
