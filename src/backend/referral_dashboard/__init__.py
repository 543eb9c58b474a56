"""
Referral dashboard analytics.

Turns raw referral codes and purchase lifecycle events into the conversion
totals, commission earnings and daily series rendered by the affiliate
dashboard.
"""

from .aggregation import aggregate, aggregate_codes, build_dashboard_stats, calculate_earnings  # noqa: F401
from .classifier import classify, is_purchase_like_category  # noqa: F401
from .config import DashboardConfig, load_dashboard_config  # noqa: F401
from .ingestion import normalize_event, parse_event_payload  # noqa: F401
from .models import (  # noqa: F401
    CodeDetail,
    CommissionRule,
    DashboardFilters,
    DashboardResult,
    DashboardStats,
    EarningsBreakdown,
    EventMetadata,
    EventUnionMap,
    RawLifecycleEvent,
    ReferralCodeAggregate,
    ReferralCodeSource,
    TimeSeriesPoint,
    UserEventSource,
    UserSummary,
)
from .repository import (  # noqa: F401
    DataSourceError,
    ReferralDataRepository,
    SQLReferralRepository,
    build_repository_from_env,
)
from .schema import build_union_schema, build_union_schema_for_codes  # noqa: F401
from .service import ReferralDashboardService  # noqa: F401
from .timeseries import build_time_series  # noqa: F401
