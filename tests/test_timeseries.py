from datetime import date

from backend.referral_dashboard.models import CommissionRule
from backend.referral_dashboard.schema import build_union_schema
from backend.referral_dashboard.timeseries import build_time_series, first_occurrences, resolve_date_range

from factories import cancellation, named, purchase, renewal, trial, user

UNION = build_union_schema(
    [[CommissionRule(event="free_trial", rate=2.0), CommissionRule(event="purchase", rate=10.0)]]
)


def _by_date(points):
    return {point.date: dict(point.event_counts) for point in points}


def test_signup_only_user_lands_on_referral_date():
    points = build_time_series([user("u1", signup="2024-01-10")], UNION, today=date(2024, 1, 12))
    assert [point.date for point in points] == ["2024-01-10", "2024-01-11", "2024-01-12"]
    assert points[0].event_counts == {"free_trial": 0, "purchase": 0, "signup": 1}
    assert sum(point.event_counts["free_trial"] + point.event_counts["purchase"] for point in points) == 0


def test_each_category_is_attributed_to_the_first_event_date():
    events = [renewal("2024-01-20"), trial("2024-01-01"), renewal("2024-01-05"), cancellation("2024-01-25")]
    assert first_occurrences(events) == {"free_trial": "2024-01-01", "purchase": "2024-01-05"}

    points = _by_date(build_time_series([user("u1", events=events)], UNION, "2024-01-01", "2024-01-31"))
    assert points["2024-01-01"]["free_trial"] == 1
    assert points["2024-01-05"]["purchase"] == 1
    assert points["2024-01-20"]["purchase"] == 0
    assert sum(day["purchase"] for day in points.values()) == 1


def test_requested_range_is_complete_sorted_and_zero_filled():
    users = [user("u1", events=[purchase("2024-02-14")]), user("u2", events=[trial("2024-03-20")])]
    points = build_time_series(users, UNION, date(2024, 2, 1), date(2024, 2, 29))
    dates = [point.date for point in points]
    assert len(points) == 29
    assert dates == sorted(dates)
    assert len(set(dates)) == len(dates)
    assert all(set(point.event_counts) == {"free_trial", "purchase", "signup"} for point in points)
    # The trial on 2024-03-20 is outside the requested window.
    assert sum(point.event_counts["free_trial"] for point in points) == 0
    assert _by_date(points)["2024-02-14"]["purchase"] == 1


def test_same_user_delivered_twice_is_counted_once():
    duplicate = [user("u1", signup="2024-01-02", events=[trial("2024-01-03")])] * 2
    points = _by_date(build_time_series(duplicate, UNION, "2024-01-01", "2024-01-05"))
    assert points["2024-01-02"]["signup"] == 1
    assert points["2024-01-03"]["free_trial"] == 1


def test_users_without_ids_are_kept_apart():
    anonymous = [user(None, events=[trial("2024-01-03")]), user(None, events=[trial("2024-01-03")])]
    points = _by_date(build_time_series(anonymous, UNION, "2024-01-01", "2024-01-05"))
    assert points["2024-01-03"]["free_trial"] == 2

    mixed = [user(None, events=[trial("2024-01-03")]), user("user_0", events=[trial("2024-01-03")])]
    points = _by_date(build_time_series(mixed, UNION, "2024-01-01", "2024-01-05"))
    assert points["2024-01-03"]["free_trial"] == 2


def test_default_range_starts_at_earliest_activity():
    users = [user("u1", events=[purchase("2024-05-03")]), user("u2", signup="2024-05-01")]
    points = build_time_series(users, UNION, today=date(2024, 5, 5))
    assert [point.date for point in points][0] == "2024-05-01"
    assert points[-1].date == "2024-05-05"
    assert len(points) == 5


def test_default_range_without_data_is_the_lookback_window():
    points = build_time_series([], UNION, today=date(2024, 3, 31))
    assert points[0].date == "2024-03-01"
    assert points[-1].date == "2024-03-31"
    assert len(points) == 31
    assert all(value == 0 for point in points for value in point.event_counts.values())


def test_lookback_window_is_configurable():
    start, end = resolve_date_range([], today=date(2024, 3, 31), lookback_days=7)
    assert (start, end) == (date(2024, 3, 24), date(2024, 3, 31))


def test_dynamic_categories_outside_schema_are_not_charted():
    union = build_union_schema([[CommissionRule(event="3_meals_logged", rate=1.0)]])
    users = [user("u1", events=[named("3_meals_logged", "2024-01-02"), named("unconfigured", "2024-01-02")])]
    points = _by_date(build_time_series(users, union, "2024-01-01", "2024-01-03"))
    assert points["2024-01-02"] == {"3_meals_logged": 1, "signup": 0}
