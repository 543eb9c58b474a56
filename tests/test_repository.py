import json
import logging

import pytest
from sqlalchemy import create_engine, text

from backend.referral_dashboard.config import load_dashboard_config
from backend.referral_dashboard.repository import DataSourceError, SQLReferralRepository, build_repository_from_env
from backend.referral_dashboard.service import ReferralDashboardService

from factories import ms

SCHEMA = [
    """
    CREATE TABLE referral_codes (
        id TEXT PRIMARY KEY, code TEXT, created_at TEXT, start_date TEXT, end_date TEXT,
        quota INTEGER, referrals_count INTEGER
    )
    """,
    """
    CREATE TABLE commission_rules (
        referral_code_id TEXT, event TEXT, rate REAL, currency TEXT, display_name TEXT
    )
    """,
    "CREATE TABLE referrals (user_id TEXT, referral_code TEXT, created_at TEXT)",
    "CREATE TABLE purchase_history (id TEXT, user_id TEXT, event TEXT, created_at TEXT)",
]


def _seed(engine):
    trial = {"type": "INITIAL_PURCHASE", "period_type": "TRIAL", "purchased_at_ms": ms("2024-01-03"), "price": 0}
    renewal = {"type": "RENEWAL", "period_type": "NORMAL", "purchased_at_ms": ms("2024-02-03"), "price": 9.99}
    with engine.begin() as connection:
        for statement in SCHEMA:
            connection.execute(text(statement))
        connection.execute(
            text(
                "INSERT INTO referral_codes VALUES "
                "('c1', 'SPRING', '2024-01-01T00:00:00', NULL, '2030-01-01T00:00:00', NULL, 2), "
                "('c2', 'BARE', '2024-01-02T00:00:00', NULL, NULL, 10, NULL)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO commission_rules VALUES "
                "('c1', 'free_trial', 2.5, 'USD', 'Free Trial'), "
                "('c1', 'purchase', 12, 'USD', NULL)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO referrals VALUES "
                "('u1', 'SPRING', '2024-01-02T10:00:00'), "
                "('u2', 'SPRING', '2024-01-05T10:00:00')"
            )
        )
        connection.execute(
            text("INSERT INTO purchase_history VALUES (:id, :user_id, :event, :created_at)"),
            [
                {"id": "p1", "user_id": "u1", "event": json.dumps([trial]), "created_at": "2024-01-03"},
                {"id": "p2", "user_id": "u1", "event": json.dumps(renewal), "created_at": "2024-02-03"},
                {"id": "p3", "user_id": "u2", "event": "{corrupt", "created_at": "2024-01-06"},
            ],
        )


@pytest.fixture
def repository(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'referrals.db'}")
    _seed(engine)
    return SQLReferralRepository(engine)


def test_load_codes_attaches_commission_rules(repository):
    codes = {item.code: item for item in repository.load_codes()}
    assert list(codes) == ["SPRING", "BARE"]
    spring = codes["SPRING"]
    assert spring.referrals_count == 2
    assert spring.end_date.year == 2030
    assert [(rule.event, rule.rate) for rule in spring.commission_rules] == [("free_trial", 2.5), ("purchase", 12.0)]
    assert codes["BARE"].commission_rules == ()
    assert codes["BARE"].quota == 10
    assert codes["BARE"].referrals_count == 0


def test_load_users_parses_history_and_skips_corrupt_rows(repository, caplog):
    with caplog.at_level(logging.WARNING):
        users = {item.user_id: item for item in repository.load_users()}
    assert [event.type for event in users["u1"].events] == ["INITIAL_PURCHASE", "RENEWAL"]
    assert all(event.user_id == "u1" for event in users["u1"].events)
    assert users["u2"].events == ()
    assert users["u2"].referral_code == "SPRING"
    assert "Failed to parse purchase events payload" in caplog.text


def test_snapshot_feeds_the_service(repository):
    service = ReferralDashboardService(repository.load_codes(), repository.load_users())
    result = service.build()
    spring = next(row for row in result.codes if row.code == "SPRING")
    assert spring.conversions["free_trial"] == 1
    assert spring.conversions["purchase"] == 1
    assert spring.earnings.total == 14.5


def test_missing_tables_raise_data_source_error(tmp_path):
    empty = SQLReferralRepository(create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))
    with pytest.raises(DataSourceError):
        empty.load_codes()
    with pytest.raises(DataSourceError):
        empty.load_users()


def test_build_repository_from_config(tmp_path, monkeypatch):
    monkeypatch.delenv("REFERRAL_DASHBOARD_DATABASE_URL", raising=False)
    assert build_repository_from_env(load_dashboard_config()) is None
    config = load_dashboard_config({"database": {"url": f"sqlite:///{tmp_path / 'x.db'}"}})
    assert isinstance(build_repository_from_env(config), SQLReferralRepository)
