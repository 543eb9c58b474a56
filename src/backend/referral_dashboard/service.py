from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import List, Optional, Sequence

from .aggregation import (
    aggregate_code,
    aggregate_codes,
    build_dashboard_stats,
    count_signups_in_range,
    filter_by_referral_codes,
    filter_users_by_date_range,
    group_users_by_code,
    revenue_from_events,
    search_codes,
    sort_codes,
)
from .config import DashboardConfig
from .ingestion import to_date_key
from .models import (
    CodeDetail,
    DashboardFilters,
    DashboardResult,
    EventUnionMap,
    ReferralCodeSource,
    UserEventSource,
    UserSummary,
)
from .schema import build_union_schema_for_codes
from .timeseries import build_time_series, first_occurrences


class ReferralDashboardService:
    """
    Computes dashboard aggregates over one fetched snapshot of codes and users.

    The union schema is built once from the unfiltered snapshot so every
    filtered view renders the same columns and series.
    """

    def __init__(
        self,
        codes: Sequence[ReferralCodeSource],
        users: Sequence[UserEventSource],
        config: Optional[DashboardConfig] = None,
    ) -> None:
        self.config = config or DashboardConfig()
        self.codes = tuple(codes)
        self.users = tuple(users)
        self.default_rules = self.config.commission.rules()
        self.union_schema: EventUnionMap = build_union_schema_for_codes(
            self.codes,
            self.users,
            default_rules=self.default_rules,
        )

    def build(
        self,
        filters: Optional[DashboardFilters] = None,
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> DashboardResult:
        filters = filters or DashboardFilters()
        codes, users = self._select(filters)

        aggregates = aggregate_codes(
            codes,
            users,
            self.union_schema,
            default_rules=self.default_rules,
            default_currency=self.config.commission.currency,
            now=now,
        )
        stats = build_dashboard_stats(aggregates, self.union_schema, self.config.commission.currency)

        rows = search_codes(aggregates, filters.search)
        rows = sort_codes(rows, filters.sort_key, filters.sort_direction)

        time_series = build_time_series(
            users,
            self.union_schema,
            start_date=filters.start_date,
            end_date=filters.end_date,
            today=today,
            lookback_days=self.config.timeseries.default_lookback_days,
        )
        return DashboardResult(
            stats=stats,
            codes=rows,
            time_series=time_series,
            union_schema=self.union_schema,
        )

    def code_detail(
        self,
        code: str,
        filters: Optional[DashboardFilters] = None,
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> CodeDetail:
        filters = replace(filters or DashboardFilters(), referral_codes=(code,))
        codes, users = self._select(filters)
        if not codes:
            raise KeyError(code)

        aggregate = aggregate_code(
            codes[0],
            users,
            self.union_schema,
            default_rules=self.default_rules,
            default_currency=self.config.commission.currency,
            now=now,
        )
        time_series = build_time_series(
            users,
            self.union_schema,
            start_date=filters.start_date,
            end_date=filters.end_date,
            today=today,
            lookback_days=self.config.timeseries.default_lookback_days,
        )
        return CodeDetail(
            code=aggregate,
            users=[summarize_user(user) for user in users],
            time_series=time_series,
        )

    def _select(self, filters: DashboardFilters):
        codes = filter_by_referral_codes(self.codes, filters.referral_codes)
        selected = {code.code for code in codes}
        users: List[UserEventSource] = [
            user
            for code_name, code_users in group_users_by_code(self.users).items()
            if code_name in selected
            for user in code_users
        ]

        if filters.has_date_range:
            users = filter_users_by_date_range(users, filters.start_date, filters.end_date)
            signups = count_signups_in_range(users)
            codes = [replace(code, referrals_count=signups.get(code.code, 0)) for code in codes]
        return codes, users


def summarize_user(user: UserEventSource) -> UserSummary:
    return UserSummary(
        user_id=user.user_id,
        signup_date=to_date_key(user.referral_created_at),
        first_conversions=first_occurrences(user.events),
        revenue=revenue_from_events(user.events),
        event_count=len(user.events),
    )
