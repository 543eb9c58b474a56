from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .config import DashboardConfig, load_dashboard_config
from .ingestion import normalize_events, parse_event_payload, to_datetime
from .models import CommissionRule, ReferralCodeSource, UserEventSource

logger = logging.getLogger(__name__)


class DataSourceError(RuntimeError):
    """Raised when the backing store cannot deliver a snapshot."""


class ReferralDataRepository:
    """
    Interface for loading referral codes and the users attributed to them.

    The two loads are independent so callers can run them concurrently.
    """

    def load_codes(self) -> Sequence[ReferralCodeSource]:
        raise NotImplementedError

    def load_users(self) -> Sequence[UserEventSource]:
        raise NotImplementedError


class SQLReferralRepository(ReferralDataRepository):
    """
    Load referral data from the relational store.

    Expected tables:
      - referral_codes(id, code, created_at, start_date, end_date, quota, referrals_count)
      - commission_rules(referral_code_id, event, rate, currency, display_name)
      - referrals(user_id, referral_code, created_at)
      - purchase_history(id, user_id, event, created_at)
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def load_codes(self) -> Sequence[ReferralCodeSource]:
        codes_query = text(
            """
            SELECT id, code, created_at, start_date, end_date, quota, COALESCE(referrals_count, 0) AS referrals_count
            FROM referral_codes
            ORDER BY created_at ASC, id ASC
            """
        )
        rules_query = text(
            """
            SELECT referral_code_id, event, rate, currency, display_name
            FROM commission_rules
            """
        )
        try:
            with self.engine.connect() as connection:
                code_rows = connection.execute(codes_query).fetchall()
                rule_rows = connection.execute(rules_query).fetchall()
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to load referral codes: {exc}") from exc

        rules: Dict[str, List[CommissionRule]] = defaultdict(list)
        for row in rule_rows:
            rules[str(row.referral_code_id)].append(self._row_to_rule(row))
        return tuple(self._row_to_code(row, rules.get(str(row.id), [])) for row in code_rows)

    def load_users(self) -> Sequence[UserEventSource]:
        referrals_query = text(
            """
            SELECT user_id, referral_code, created_at
            FROM referrals
            ORDER BY created_at ASC
            """
        )
        history_query = text(
            """
            SELECT id, user_id, event, created_at
            FROM purchase_history
            ORDER BY created_at ASC
            """
        )
        try:
            with self.engine.connect() as connection:
                referral_rows = connection.execute(referrals_query).fetchall()
                history_rows = connection.execute(history_query).fetchall()
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to load purchase history: {exc}") from exc

        payloads: Dict[str, list] = defaultdict(list)
        for row in history_rows:
            payloads[str(row.user_id)].extend(parse_event_payload(row.event))

        users = []
        for row in referral_rows:
            user_id = str(row.user_id)
            users.append(
                UserEventSource(
                    user_id=user_id,
                    referral_code=row.referral_code,
                    referral_created_at=to_datetime(row.created_at),
                    events=normalize_events(payloads.get(user_id, []), user_id=user_id),
                )
            )
        return tuple(users)

    @staticmethod
    def _row_to_rule(row: Row) -> CommissionRule:
        return CommissionRule(
            event=str(row.event),
            rate=float(row.rate or 0),
            currency=str(row.currency or "USD"),
            display_name=row.display_name,
        )

    @staticmethod
    def _row_to_code(row: Row, rules: Sequence[CommissionRule]) -> ReferralCodeSource:
        return ReferralCodeSource(
            id=str(row.id),
            code=str(row.code),
            created_at=to_datetime(row.created_at),
            start_date=to_datetime(row.start_date),
            end_date=to_datetime(row.end_date),
            quota=int(row.quota) if row.quota is not None else None,
            referrals_count=int(row.referrals_count),
            commission_rules=tuple(rules),
        )


def build_repository_from_env(config: Optional[DashboardConfig] = None) -> Optional[ReferralDataRepository]:
    cfg = config or load_dashboard_config()
    if cfg.database.url:
        engine = create_engine(cfg.database.url)
        logger.info("Referral data repository bound to %s", engine.url.render_as_string(hide_password=True))
        return SQLReferralRepository(engine)
    return None
