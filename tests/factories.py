from datetime import datetime, timezone

from backend.referral_dashboard.models import (
    NAMED_SOURCE,
    CommissionRule,
    RawLifecycleEvent,
    ReferralCodeSource,
    UserEventSource,
)


def ms(day: str, hour: int = 12) -> int:
    dt = datetime.fromisoformat(day).replace(hour=hour, tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def trial(day: str, hour: int = 12) -> RawLifecycleEvent:
    return RawLifecycleEvent(type="INITIAL_PURCHASE", period_type="TRIAL", event_timestamp_ms=ms(day, hour), price=0.0)


def purchase(day: str, price: float = 9.99) -> RawLifecycleEvent:
    return RawLifecycleEvent(type="INITIAL_PURCHASE", period_type="NORMAL", event_timestamp_ms=ms(day), price=price)


def renewal(day: str) -> RawLifecycleEvent:
    return RawLifecycleEvent(type="RENEWAL", period_type="NORMAL", event_timestamp_ms=ms(day), price=9.99)


def cancellation(day: str) -> RawLifecycleEvent:
    return RawLifecycleEvent(type="CANCELLATION", period_type="NORMAL", event_timestamp_ms=ms(day))


def named(name: str, day: str) -> RawLifecycleEvent:
    return RawLifecycleEvent(type=name, event_timestamp_ms=ms(day), source=NAMED_SOURCE)


def user(user_id, code="SPRING", signup=None, events=()) -> UserEventSource:
    created = datetime.fromisoformat(signup).replace(tzinfo=timezone.utc) if signup else None
    return UserEventSource(user_id=user_id, referral_code=code, referral_created_at=created, events=tuple(events))


def code(code_name="SPRING", referrals_count=0, quota=None, start=None, end=None, rules=None) -> ReferralCodeSource:
    if rules is None:
        rules = (
            CommissionRule(event="free_trial", rate=2.0, display_name="Free Trial"),
            CommissionRule(event="purchase", rate=10.0, display_name="Purchase"),
        )
    return ReferralCodeSource(
        id=f"id-{code_name}",
        code=code_name,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        start_date=start,
        end_date=end,
        quota=quota,
        referrals_count=referrals_count,
        commission_rules=tuple(rules),
    )
