"""
Configuration for the referral dashboard.

Values come from defaults, then an optional nested override mapping, then
environment variables.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from .models import CommissionRule


class CommissionRuleConfig(BaseModel):
    event: str
    rate: float
    currency: str = "USD"
    display_name: Optional[str] = None

    def to_rule(self) -> CommissionRule:
        return CommissionRule(
            event=self.event,
            rate=self.rate,
            currency=self.currency,
            display_name=self.display_name,
        )


def _default_rules() -> List[CommissionRuleConfig]:
    return [
        CommissionRuleConfig(event="free_trial", rate=2.0, display_name="Free Trial"),
        CommissionRuleConfig(event="purchase", rate=10.0, display_name="Purchase"),
    ]


class CommissionConfig(BaseModel):
    default_rules: List[CommissionRuleConfig] = _default_rules()
    """Rules applied to referral codes that carry none of their own"""

    currency: str = "USD"
    """Currency reported when a code has no rules at all"""

    def rules(self) -> List[CommissionRule]:
        return [rule.to_rule() for rule in self.default_rules]


class TimeSeriesConfig(BaseModel):
    default_lookback_days: int = 30
    """Range used for charts when there is no data and no explicit start"""


class DatabaseConfig(BaseModel):
    url: Optional[str] = None


class DashboardConfig(BaseModel):
    commission: CommissionConfig = CommissionConfig()
    timeseries: TimeSeriesConfig = TimeSeriesConfig()
    database: DatabaseConfig = DatabaseConfig()
    log_level: str = "INFO"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_dashboard_config(overrides: Optional[Mapping[str, Any]] = None) -> DashboardConfig:
    cfg = DashboardConfig()
    overrides = overrides or {}

    commission_cfg: Dict[str, Any] = dict(overrides.get("commission", {}))
    cfg.commission = CommissionConfig(
        default_rules=commission_cfg.get("default_rules", cfg.commission.default_rules),
        currency=os.getenv("REFERRAL_DASHBOARD_CURRENCY", commission_cfg.get("currency", cfg.commission.currency)),
    )

    timeseries_cfg = overrides.get("timeseries", {})
    cfg.timeseries = TimeSeriesConfig(
        default_lookback_days=_env_int(
            "REFERRAL_DASHBOARD_LOOKBACK_DAYS",
            timeseries_cfg.get("default_lookback_days", cfg.timeseries.default_lookback_days),
        ),
    )

    database_cfg = overrides.get("database", {})
    cfg.database = DatabaseConfig(
        url=os.getenv("REFERRAL_DASHBOARD_DATABASE_URL", database_cfg.get("url", cfg.database.url)),
    )

    cfg.log_level = os.getenv("REFERRAL_DASHBOARD_LOG_LEVEL", overrides.get("log_level", cfg.log_level))
    return cfg
