import random
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from aggregation import AggregateMode
from cursors import encode_cursor
from database import Base
from models import (
    BalanceChange,
    BalanceChangeKind,
    CheckpointEntry,
    Circle,
    DebitEntry,
    ExpenseCategory,
    MonthlyAggregate,
)
from periods import Granularity, Window, local_now
from schemas import CheckpointIn, CircleIn, CreditIn, DebitIn
from services import (
    AnalyticsService,
    BalanceService,
    CircleService,
    FeedService,
    LedgerService,
    ReconciliationService,
    TagService,
)
from store import EventStore


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_circle(session, name="Household") -> int:
    return CircleService(session).create(CircleIn(name=name)).id


def cached_balance(session, circle_id: int) -> int:
    return session.scalar(
        select(Circle.current_balance).where(Circle.id == circle_id)
    )


def at(day: int, hour: int = 12) -> datetime:
    return datetime(2025, 1, day, hour, 0)


def test_cache_follows_recorded_entries() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=10_000, occurred_at=at(1)))
    ledger.record_debit(
        circle_id,
        DebitIn(
            user_id=2,
            amount=1_200,
            category=ExpenseCategory.food,
            tags=["Lunch"],
            occurred_at=at(2),
        ),
    )
    ledger.record_credit(circle_id, CreditIn(user_id=1, amount=300, occurred_at=at(3)))

    assert cached_balance(session, circle_id) == 9_100
    assert BalanceService(session).reconstruct_balance(circle_id) == 9_100
    assert BalanceService(session).reconstruct_balance(circle_id, at(2, 23)) == 8_800

    journal = LedgerService(session).journal(circle_id)
    assert [c.kind for c in journal] == [
        BalanceChangeKind.credit,
        BalanceChangeKind.debit,
        BalanceChangeKind.checkpoint,
    ]
    assert (journal[1].balance_before, journal[1].balance_after) == (10_000, 8_800)


def test_backdated_debit_before_checkpoint_leaves_cache_alone() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=5_000, occurred_at=at(10)))
    ledger.record_debit(circle_id, DebitIn(user_id=1, amount=700, occurred_at=at(4)))

    assert cached_balance(session, circle_id) == 5_000
    assert BalanceService(session).reconstruct_balance(circle_id, at(5)) == -700


def test_history_pairs_each_entry_with_its_balance() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)
    ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=1_000, occurred_at=at(1)))
    ledger.record_debit(circle_id, DebitIn(user_id=1, amount=250, occurred_at=at(2)))
    ledger.record_credit(circle_id, CreditIn(user_id=1, amount=50, occurred_at=at(3)))

    history = BalanceService(session).history(circle_id)
    assert [balance for _, balance in history] == [1_000, 750, 800]

    recent = BalanceService(session).history(circle_id, start=at(2, 0))
    assert [(event.kind.value, balance) for event, balance in recent] == [
        ("debit", 750),
        ("credit", 800),
    ]


def test_backdated_checkpoint_replays_later_flows() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    ledger.record_debit(circle_id, DebitIn(user_id=1, amount=100, occurred_at=at(5)))
    ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=2_000, occurred_at=at(3)))

    assert cached_balance(session, circle_id) == 1_900
    assert BalanceService(session).reconstruct_balance(circle_id) == 1_900


def test_successor_checkpoint_diff_is_kept_current() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    first = ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=1_000, occurred_at=at(1)))
    last = ledger.record_checkpoint(circle_id, CheckpointIn(user_id=1, amount=1_500, occurred_at=at(10)))
    assert first.diff_from_previous is None
    assert last.diff_from_previous == 500

    middle = ledger.record_checkpoint(
        circle_id, CheckpointIn(user_id=1, amount=1_200, occurred_at=at(5))
    )
    assert middle.diff_from_previous == 200
    assert session.get(CheckpointEntry, last.id).diff_from_previous == 300
    assert cached_balance(session, circle_id) == 1_500

    ledger.delete_entry(middle.id)
    assert session.get(CheckpointEntry, last.id).diff_from_previous == 500

    ledger.delete_entry(last.id)
    assert cached_balance(session, circle_id) == 1_000


def test_monthly_aggregate_tracks_debits() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    first = ledger.record_debit(circle_id, DebitIn(user_id=1, amount=250, occurred_at=at(3)))
    second = ledger.record_debit(circle_id, DebitIn(user_id=1, amount=50, occurred_at=at(20)))
    ledger.record_credit(circle_id, CreditIn(user_id=1, amount=999, occurred_at=at(21)))

    aggregate = session.scalar(select(MonthlyAggregate))
    assert (aggregate.year, aggregate.month) == (2025, 1)
    assert (aggregate.expense_total, aggregate.expense_count) == (300, 2)

    ledger.delete_entry(first.id)
    aggregate = session.scalar(select(MonthlyAggregate))
    assert (aggregate.expense_total, aggregate.expense_count) == (50, 1)

    ledger.delete_entry(second.id)
    assert session.scalar(select(MonthlyAggregate)) is None

    ledger.record_debit(circle_id, DebitIn(user_id=1, amount=75, occurred_at=at(9)))
    aggregate = session.scalar(select(MonthlyAggregate))
    aggregate.expense_total = 1
    session.commit()
    assert ReconciliationService(session).rebuild_monthly_aggregates(circle_id) == 1
    aggregate = session.scalar(select(MonthlyAggregate))
    assert (aggregate.expense_total, aggregate.expense_count) == (75, 1)


def test_random_interleavings_keep_cache_equal_to_reconstruction() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)
    balances = BalanceService(session)
    rng = random.Random(42)
    base = datetime(2025, 1, 1)
    live: list[int] = []

    for _ in range(120):
        if live and rng.random() < 0.3:
            victim = live.pop(rng.randrange(len(live)))
            ledger.delete_entry(victim)
        else:
            when = base + timedelta(hours=rng.randrange(0, 24 * 90))
            amount = rng.randrange(1, 10_000)
            roll = rng.random()
            if roll < 0.25:
                entry = ledger.record_checkpoint(
                    circle_id, CheckpointIn(user_id=1, amount=amount, occurred_at=when)
                )
            elif roll < 0.7:
                entry = ledger.record_debit(
                    circle_id, DebitIn(user_id=1, amount=amount, occurred_at=when)
                )
            else:
                entry = ledger.record_credit(
                    circle_id, CreditIn(user_id=1, amount=amount, occurred_at=when)
                )
            live.append(entry.id)

        assert cached_balance(session, circle_id) == balances.reconstruct_balance(circle_id)

    results = ReconciliationService(session).reconcile(circle_id)
    assert [r.repaired for r in results] == [False]


def test_reconcile_repairs_and_journals_drift() -> None:
    session = make_session()
    circle_id = make_circle(session)
    LedgerService(session).record_checkpoint(
        circle_id, CheckpointIn(user_id=1, amount=4_000, occurred_at=at(2))
    )
    EventStore(session).set_current_balance(circle_id, 12_345)
    session.commit()

    results = ReconciliationService(session).reconcile()

    assert len(results) == 1
    assert results[0].repaired
    assert (results[0].cached, results[0].reconstructed) == (12_345, 4_000)
    assert cached_balance(session, circle_id) == 4_000
    change = session.scalar(
        select(BalanceChange).where(BalanceChange.kind == BalanceChangeKind.reconcile)
    )
    assert (change.balance_before, change.balance_after) == (12_345, 4_000)

    assert not ReconciliationService(session).reconcile(circle_id)[0].repaired


def test_future_entries_and_unknown_circles_are_rejected() -> None:
    session = make_session()
    circle_id = make_circle(session)
    ledger = LedgerService(session)

    with pytest.raises(ValueError):
        ledger.record_debit(
            circle_id,
            DebitIn(user_id=1, amount=10, occurred_at=local_now() + timedelta(days=1)),
        )
    with pytest.raises(ValueError, match="Circle not found"):
        ledger.record_credit(circle_id + 1, CreditIn(user_id=1, amount=10))
    with pytest.raises(ValueError, match="Entry not found"):
        ledger.delete_entry(999)


def test_tags_are_deduplicated_case_insensitively() -> None:
    session = make_session()
    circle_id = make_circle(session)

    entry = LedgerService(session).record_debit(
        circle_id,
        DebitIn(user_id=1, amount=10, tags=["Food", "food ", " "], occurred_at=at(2)),
    )

    assert [t.name for t in entry.tags] == ["Food"]
    assert [t.name for t in TagService(session).list_all(circle_id)] == ["Food"]


def test_tag_service_totals_and_summary() -> None:
    session = make_session()
    home = make_circle(session, "Home")
    trip = make_circle(session, "Trip")
    ledger = LedgerService(session)
    ledger.record_debit(home, DebitIn(user_id=1, amount=300, tags=["food"], occurred_at=at(2)))
    ledger.record_debit(home, DebitIn(user_id=1, amount=100, occurred_at=at(3)))
    ledger.record_debit(trip, DebitIn(user_id=1, amount=900, tags=["hotel"], occurred_at=at(4)))

    totals = TagService(session).aggregate_tags(home, month=(2025, 1))
    assert [(t.tag, t.total) for t in totals] == [("food", 300), ("uncategorized", 100)]

    summary = TagService(session).summary([home, trip], today=date(2025, 1, 31))
    assert [(t.circle_id, t.tag, t.total) for t in summary] == [
        (trip, "hotel", 900),
        (home, "food", 300),
    ]


def test_feed_service_pages_across_circles() -> None:
    session = make_session()
    home = make_circle(session, "Home")
    trip = make_circle(session, "Trip")
    ledger = LedgerService(session)
    ledger.record_checkpoint(home, CheckpointIn(user_id=1, amount=1_000, occurred_at=at(1)))
    ledger.record_checkpoint(trip, CheckpointIn(user_id=1, amount=500, occurred_at=at(2)))
    ledger.record_debit(home, DebitIn(user_id=1, amount=100, occurred_at=at(3)))
    ledger.record_debit(trip, DebitIn(user_id=1, amount=50, occurred_at=at(4)))

    feed = FeedService(session)
    first = feed.paginate_feed([home, trip], limit=3)
    second = feed.paginate_feed([home, trip], encode_cursor(first.next_cursor), limit=3)

    assert [(i.event.circle_id, i.balance_after) for i in first.items[:2]] == [
        (trip, 450),
        (home, 900),
    ]
    assert first.has_more is True
    assert [i.event.id for i in second.items] == [1]
    assert second.has_more is False

    with pytest.raises(ValueError):
        feed.paginate_feed([])
    with pytest.raises(ValueError):
        feed.paginate_feed([home], "not-a-cursor")


def test_analytics_service_scopes() -> None:
    session = make_session()
    home = make_circle(session, "Home")
    trip = make_circle(session, "Trip")
    ledger = LedgerService(session)
    ledger.record_checkpoint(home, CheckpointIn(user_id=1, amount=1_000, occurred_at=at(1)))
    ledger.record_checkpoint(trip, CheckpointIn(user_id=1, amount=200, occurred_at=at(2)))
    ledger.record_debit(home, DebitIn(user_id=1, amount=100, tags=["food"], occurred_at=at(2)))
    window = Window(Granularity.daily, date(2025, 1, 1), date(2025, 1, 3))
    analytics = AnalyticsService(session)

    total = analytics.aggregate_period(AggregateMode.total_balance, window, [home, trip])
    assert [p.value for p in total] == [1_000, 1_100, 1_100]

    single = analytics.aggregate_period(AggregateMode.circle_balance, window, [home])
    assert [p.value for p in single] == [1_000, 900, 900]

    rows = analytics.circle_table(window, [home, trip])
    assert rows[1] == {"bucket_key": "2025-01-02", "Home": 900, "Trip": 200}

    tag_rows = analytics.tag_table(window, home)
    assert tag_rows[1] == {"bucket_key": "2025-01-02", "food": 100}

    with pytest.raises(ValueError):
        analytics.aggregate_period(AggregateMode.total_balance, window, [])
    with pytest.raises(ValueError):
        analytics.aggregate_period(AggregateMode.circle_balance, window, [home, trip])


def test_reconcile_keeps_cache_that_includes_entries_newer_than_its_start() -> None:
    session = make_session()
    circle_id = make_circle(session)
    LedgerService(session).record_checkpoint(
        circle_id,
        CheckpointIn(user_id=1, amount=1_000, occurred_at=local_now() - timedelta(hours=1)),
    )
    # a debit committed by a concurrent writer while reconciliation was starting
    late = local_now() + timedelta(seconds=5)
    session.add(DebitEntry(circle_id=circle_id, user_id=1, amount=300, occurred_at=late))
    EventStore(session).set_current_balance(circle_id, 700)
    session.commit()

    results = ReconciliationService(session).reconcile(circle_id)

    assert not results[0].repaired
    assert cached_balance(session, circle_id) == 700
    assert BalanceService(session).reconstruct_balance(circle_id, late) == 700


def test_timezone_aware_reads_are_rejected() -> None:
    session = make_session()
    circle_id = make_circle(session)
    LedgerService(session).record_checkpoint(
        circle_id, CheckpointIn(user_id=1, amount=100, occurred_at=at(1))
    )

    with pytest.raises(ValueError):
        BalanceService(session).reconstruct_balance(circle_id, local_now().astimezone())
    with pytest.raises(ValueError):
        FeedService(session).paginate_feed([circle_id], "2099-01-01T00:00:00+09:00", 5)


def test_entry_notes_reach_the_event_log() -> None:
    session = make_session()
    circle_id = make_circle(session)
    LedgerService(session).record_debit(
        circle_id, DebitIn(user_id=1, amount=40, note="taxi home", occurred_at=at(2))
    )

    [event] = EventStore(session).list_events([circle_id])
    assert event.note == "taxi home"
