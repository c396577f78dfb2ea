from datetime import date, datetime

from aggregation import (
    UNCATEGORIZED_TAG,
    AggregateMode,
    SeriesPoint,
    aggregate_period,
    aggregate_tags,
    circle_balance_table,
    pivot_series,
)
from ledger import Checkpoint, Credit, Debit
from periods import Granularity


def checkpoint(event_id, when, amount, circle_id=1):
    return Checkpoint(
        id=event_id, circle_id=circle_id, user_id=1, occurred_at=when, amount=amount, seq=event_id
    )


def debit(event_id, when, amount, circle_id=1, tags=()):
    return Debit(
        id=event_id,
        circle_id=circle_id,
        user_id=1,
        occurred_at=when,
        amount=amount,
        seq=event_id,
        tags=tuple(tags),
    )


def credit(event_id, when, amount, circle_id=1):
    return Credit(
        id=event_id, circle_id=circle_id, user_id=1, occurred_at=when, amount=amount, seq=event_id
    )


def test_daily_circle_balance_fills_every_day() -> None:
    events = [
        checkpoint(1, datetime(2024, 12, 31, 20, 0), 1000),
        debit(2, datetime(2025, 1, 3, 12, 0), 100),
        credit(3, datetime(2025, 1, 5, 9, 0), 50),
    ]

    points = aggregate_period(
        events,
        Granularity.daily,
        date(2025, 1, 1),
        date(2025, 1, 10),
        AggregateMode.circle_balance,
    )

    assert len(points) == 10
    assert points[0] == SeriesPoint("2025-01-01", 1000)
    assert [p.value for p in points] == [1000, 1000, 900, 900] + [950] * 6
    assert points[-1].bucket_key == "2025-01-10"


def test_weekly_bucket_keeps_last_day_value() -> None:
    events = [
        checkpoint(1, datetime(2025, 1, 7, 9, 0), 1000),
        debit(2, datetime(2025, 1, 12, 18, 0), 200),
        credit(3, datetime(2025, 1, 14, 8, 0), 10),
    ]

    points = aggregate_period(
        events,
        Granularity.weekly,
        date(2025, 1, 6),
        date(2025, 1, 19),
        AggregateMode.circle_balance,
    )

    assert points == [SeriesPoint("2025-01-06", 800), SeriesPoint("2025-01-13", 810)]


def test_monthly_bucket_before_first_event_is_zero() -> None:
    events = [checkpoint(1, datetime(2025, 2, 10, 9, 0), 700)]

    points = aggregate_period(
        events,
        Granularity.monthly,
        date(2025, 1, 1),
        date(2025, 2, 28),
        AggregateMode.circle_balance,
    )

    assert points == [SeriesPoint("2025-01", 0), SeriesPoint("2025-02", 700)]


def test_total_balance_sums_requested_circles() -> None:
    events = [
        checkpoint(1, datetime(2025, 1, 1, 9, 0), 1000, circle_id=1),
        checkpoint(2, datetime(2025, 1, 2, 9, 0), 500, circle_id=2),
        checkpoint(3, datetime(2025, 1, 1, 9, 0), 9999, circle_id=3),
    ]

    points = aggregate_period(
        events,
        Granularity.daily,
        date(2025, 1, 1),
        date(2025, 1, 3),
        AggregateMode.total_balance,
        circle_ids=[1, 2, 4],
    )

    assert [p.value for p in points] == [1000, 1500, 1500]


def test_tag_expense_sum_counts_each_tag_and_uncategorized() -> None:
    events = [
        debit(1, datetime(2025, 1, 1, 9, 0), 100, tags=["food"]),
        debit(2, datetime(2025, 1, 1, 12, 0), 50, tags=["food", "trip"]),
        debit(3, datetime(2025, 1, 2, 8, 0), 30),
        credit(4, datetime(2025, 1, 2, 9, 0), 999),
        debit(5, datetime(2025, 1, 5, 9, 0), 70, tags=["food"]),
    ]

    points = aggregate_period(
        events,
        Granularity.daily,
        date(2025, 1, 1),
        date(2025, 1, 2),
        AggregateMode.tag_expense_sum,
    )

    assert points == [
        SeriesPoint("2025-01-01", 150, series="food"),
        SeriesPoint("2025-01-01", 50, series="trip"),
        SeriesPoint("2025-01-02", 30, series=UNCATEGORIZED_TAG),
    ]


def test_inverted_window_is_empty() -> None:
    events = [checkpoint(1, datetime(2025, 1, 1, 9, 0), 10)]

    assert (
        aggregate_period(
            events,
            Granularity.daily,
            date(2025, 1, 5),
            date(2025, 1, 1),
            AggregateMode.circle_balance,
        )
        == []
    )


def test_circle_balance_table_has_a_column_per_circle() -> None:
    events = [
        checkpoint(1, datetime(2025, 1, 1, 9, 0), 1000, circle_id=1),
        checkpoint(2, datetime(2025, 1, 2, 9, 0), 300, circle_id=2),
    ]

    rows = circle_balance_table(
        events, Granularity.daily, date(2025, 1, 1), date(2025, 1, 2), {1: "Wallet", 2: "Bank"}
    )

    assert rows == [
        {"bucket_key": "2025-01-01", "Wallet": 1000, "Bank": 0},
        {"bucket_key": "2025-01-02", "Wallet": 1000, "Bank": 300},
    ]


def test_pivot_series_fills_missing_cells_with_zero() -> None:
    points = [
        SeriesPoint("2025-01-01", 10, series="food"),
        SeriesPoint("2025-01-02", 5, series="trip"),
    ]

    rows = pivot_series(points, ["2025-01-01", "2025-01-02"])

    assert rows == [
        {"bucket_key": "2025-01-01", "food": 10, "trip": 0},
        {"bucket_key": "2025-01-02", "food": 0, "trip": 5},
    ]


def test_aggregate_tags_ranks_by_total_and_keeps_first_seen_on_ties() -> None:
    events = [
        debit(1, datetime(2025, 1, 2, 9, 0), 100, tags=["a"]),
        debit(2, datetime(2025, 1, 3, 9, 0), 100, tags=["b"]),
        debit(3, datetime(2025, 1, 4, 9, 0), 300, tags=["c"]),
        debit(4, datetime(2025, 2, 1, 9, 0), 5000, tags=["d"]),
    ]

    totals = aggregate_tags(events, month=(2025, 1))

    assert [(t.tag, t.total, t.count) for t in totals] == [
        ("c", 300, 1),
        ("a", 100, 1),
        ("b", 100, 1),
    ]
    assert [t.tag for t in aggregate_tags(events, month=(2025, 1), limit=2)] == ["c", "a"]


def test_aggregate_tags_uncategorized_switch() -> None:
    events = [
        debit(1, datetime(2025, 1, 2, 9, 0), 40),
        debit(2, datetime(2025, 1, 3, 9, 0), 10, tags=["x"]),
    ]

    assert [t.tag for t in aggregate_tags(events)] == [UNCATEGORIZED_TAG, "x"]
    assert [t.tag for t in aggregate_tags(events, include_uncategorized=False)] == ["x"]


def test_aggregate_tags_by_circle_splits_totals() -> None:
    events = [
        debit(1, datetime(2025, 1, 2, 9, 0), 40, circle_id=1, tags=["food"]),
        debit(2, datetime(2025, 1, 3, 9, 0), 60, circle_id=2, tags=["food"]),
    ]

    totals = aggregate_tags(events, by_circle=True)

    assert [(t.circle_id, t.tag, t.total) for t in totals] == [(2, "food", 60), (1, "food", 40)]
