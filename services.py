from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from aggregation import (
    AggregateMode,
    SeriesPoint,
    TagTotal,
    aggregate_period,
    aggregate_tags,
    circle_balance_table,
    pivot_series,
)
from config import get_settings
from cursors import decode_cursor
from feed import FeedPage, paginate
from ledger import LedgerEvent
from models import (
    BalanceChange,
    BalanceChangeKind,
    CheckpointEntry,
    Circle,
    CreditEntry,
    DebitEntry,
    EventKind,
    LedgerEntry,
    MonthlyAggregate,
    Tag,
)
from periods import Window, bucket_keys, local_now, local_today
from reconstruction import (
    balance_at,
    cache_after_create,
    cache_after_delete,
    diff_from_previous,
    next_checkpoint,
    reconstruct,
)
from schemas import CheckpointIn, CircleIn, CreditIn, DebitIn
from store import EventStore, to_event

logger = logging.getLogger(__name__)


def _month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def recompute_monthly_aggregate(
    session: Session, circle_id: int, year: int, month: int
) -> None:
    start = datetime.combine(_month_start(year, month), time.min)
    end = datetime.combine(_month_end(year, month), time.max)

    row = session.execute(
        select(
            func.coalesce(func.sum(DebitEntry.amount), 0).label("total"),
            func.count(DebitEntry.id).label("count"),
        ).where(
            DebitEntry.circle_id == circle_id,
            DebitEntry.kind == EventKind.debit.value,
            DebitEntry.occurred_at.between(start, end),
        )
    ).one()
    total = int(row.total or 0)
    count = int(row.count or 0)

    aggregate = session.scalar(
        select(MonthlyAggregate).where(
            MonthlyAggregate.circle_id == circle_id,
            MonthlyAggregate.year == year,
            MonthlyAggregate.month == month,
        )
    )
    if count == 0:
        if aggregate:
            session.delete(aggregate)
        return

    if not aggregate:
        aggregate = MonthlyAggregate(
            circle_id=circle_id,
            year=year,
            month=month,
            expense_total=0,
            expense_count=0,
        )
        session.add(aggregate)
        session.flush()

    aggregate.expense_total = total
    aggregate.expense_count = count


def recompute_monthly_aggregate_for_date(
    session: Session, circle_id: int, when: date
) -> None:
    recompute_monthly_aggregate(session, circle_id, when.year, when.month)


def rebuild_monthly_aggregates(session: Session, circle_id: int) -> None:
    session.execute(
        delete(MonthlyAggregate).where(MonthlyAggregate.circle_id == circle_id)
    )
    session.flush()

    debits = EventStore(session).list_events([circle_id], [EventKind.debit])
    months = sorted({(d.occurred_at.year, d.occurred_at.month) for d in debits})
    for year, month in months:
        recompute_monthly_aggregate(session, circle_id, year, month)

    session.commit()


class CircleService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def create(self, data: CircleIn) -> Circle:
        circle = Circle(
            name=data.name.strip(),
            currency_code=data.currency_code,
            current_balance=0,
        )
        self.session.add(circle)
        self.session.commit()
        self.session.refresh(circle)
        return circle

    def get(self, circle_id: int) -> Circle:
        return self.store.get_circle(circle_id)

    def list_all(self) -> list[Circle]:
        return self.store.list_circles()


class TagService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def list_all(self, circle_id: int) -> list[Tag]:
        stmt = select(Tag).where(Tag.circle_id == circle_id).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def get_or_create(self, circle_id: int, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.circle_id == circle_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(circle_id=circle_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, circle_id: int, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            if not name.strip():
                continue
            tag = self.get_or_create(circle_id, name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags

    def aggregate_tags(
        self,
        circle_id: int,
        month: Optional[tuple[int, int]] = None,
        limit: Optional[int] = 10,
    ) -> list[TagTotal]:
        self.store.get_circle(circle_id)
        debits = self.store.list_events([circle_id], [EventKind.debit])
        return aggregate_tags(debits, month=month, limit=limit)

    def summary(
        self,
        circle_ids: Iterable[int],
        *,
        today: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[TagTotal]:
        today = today or local_today()
        limit = limit or get_settings().tag_summary_limit
        since = datetime.combine(today.replace(day=1), time.min)
        debits = self.store.list_events(circle_ids, [EventKind.debit], since=since)
        return aggregate_tags(
            debits,
            month=(today.year, today.month),
            limit=limit,
            by_circle=True,
            include_uncategorized=False,
        )


class LedgerService:
    """Write paths that keep the event log and the cached balance in step.

    Each method runs as one unit of work: the circle row is locked, the entry
    is appended or removed, the cached balance moves by the pure delta rule and
    everything commits together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def _occurred_at(self, value: Optional[datetime]) -> datetime:
        now = local_now()
        if value is None:
            return now
        if value.tzinfo is not None:
            raise ValueError("Timestamps must be local wall-clock times")
        if value > now:
            raise ValueError("Entries cannot be dated in the future")
        return value

    def record_checkpoint(self, circle_id: int, data: CheckpointIn) -> CheckpointEntry:
        entry = CheckpointEntry(
            circle_id=circle_id,
            user_id=data.user_id,
            occurred_at=self._occurred_at(data.occurred_at),
            amount=data.amount,
            note=data.note,
        )
        return self._append(circle_id, entry, BalanceChangeKind.checkpoint)

    def record_debit(self, circle_id: int, data: DebitIn) -> DebitEntry:
        if data.amount <= 0:
            raise ValueError("Amount must be positive")
        self.store.get_circle(circle_id)
        entry = DebitEntry(
            circle_id=circle_id,
            user_id=data.user_id,
            occurred_at=self._occurred_at(data.occurred_at),
            amount=data.amount,
            expense_category=data.category,
            place=data.place,
            note=data.note,
        )
        entry.tags = TagService(self.session).resolve(circle_id, data.tags)
        return self._append(circle_id, entry, BalanceChangeKind.debit)

    def record_credit(self, circle_id: int, data: CreditIn) -> CreditEntry:
        if data.amount <= 0:
            raise ValueError("Amount must be positive")
        self.store.get_circle(circle_id)
        entry = CreditEntry(
            circle_id=circle_id,
            user_id=data.user_id,
            occurred_at=self._occurred_at(data.occurred_at),
            amount=data.amount,
            income_category=data.category,
            source=data.source,
            note=data.note,
        )
        entry.tags = TagService(self.session).resolve(circle_id, data.tags)
        return self._append(circle_id, entry, BalanceChangeKind.credit)

    def _append(self, circle_id: int, entry: LedgerEntry, kind: BalanceChangeKind):
        circle = self.store.lock_circle(circle_id)
        self.session.add(entry)
        self.session.flush()

        event = to_event(entry)
        superseded = self.store.has_checkpoint_after(circle_id, event)
        later_flows: list[LedgerEvent] = []
        if isinstance(entry, CheckpointEntry):
            checkpoints = self.store.list_events([circle_id], [EventKind.checkpoint])
            entry.diff_from_previous = diff_from_previous(checkpoints, event)
            self._refresh_successor_diff(checkpoints, event)
            if not superseded:
                later_flows = self.store.list_events(
                    [circle_id],
                    [EventKind.debit, EventKind.credit],
                    since=event.occurred_at,
                )

        before = circle.current_balance
        after = cache_after_create(
            before, event, superseded=superseded, later_flows=later_flows
        )
        self._write_cache(
            circle,
            kind,
            amount=entry.amount,
            before=before,
            after=after,
            user_id=entry.user_id,
            entry_id=entry.id,
        )
        if isinstance(entry, DebitEntry):
            recompute_monthly_aggregate_for_date(
                self.session, circle_id, entry.occurred_at.date()
            )
        self.session.commit()
        self.session.refresh(entry)
        logger.info(
            f"entry_recorded: circle_id={circle_id} kind={entry.kind} "
            f"entry_id={entry.id} balance={before}->{after}"
        )
        return entry

    def delete_entry(self, entry_id: int, user_id: Optional[int] = None) -> None:
        entry = self.store.get_entry(entry_id)
        circle_id = entry.circle_id
        circle = self.store.lock_circle(circle_id)
        event = to_event(entry)
        before = circle.current_balance

        if event.kind == EventKind.checkpoint:
            checkpoints = self.store.list_events([circle_id], [EventKind.checkpoint])
            successor = next_checkpoint(checkpoints, event)
            self.session.delete(entry)
            self.session.flush()
            if successor is not None:
                remaining = [c for c in checkpoints if c.id != event.id]
                self._refresh_successor_diff(remaining, successor, inclusive=True)
            after = balance_at(self.store.list_events([circle_id]), local_now())
        else:
            superseded = self.store.has_checkpoint_after(circle_id, event)
            self.session.delete(entry)
            self.session.flush()
            after = cache_after_delete(before, event, superseded=superseded)
            if event.kind == EventKind.debit:
                recompute_monthly_aggregate_for_date(
                    self.session, circle_id, event.occurred_at.date()
                )

        self._write_cache(
            circle,
            BalanceChangeKind(event.kind.value),
            amount=event.amount,
            before=before,
            after=after,
            user_id=user_id,
            entry_id=event.id,
            is_delete=True,
        )
        self.session.commit()
        logger.info(
            f"entry_deleted: circle_id={circle_id} kind={event.kind.value} "
            f"entry_id={event.id} balance={before}->{after}"
        )

    def _refresh_successor_diff(
        self,
        checkpoints: list[LedgerEvent],
        event: LedgerEvent,
        *,
        inclusive: bool = False,
    ) -> None:
        target = event if inclusive else next_checkpoint(checkpoints, event)
        if target is None:
            return
        successor = self.session.get(CheckpointEntry, target.id)
        if successor is None:
            return
        diff = diff_from_previous(checkpoints, target)
        if successor.diff_from_previous != diff:
            successor.diff_from_previous = diff

    def _write_cache(
        self,
        circle: Circle,
        kind: BalanceChangeKind,
        *,
        amount: int,
        before: int,
        after: int,
        user_id: Optional[int],
        entry_id: Optional[int],
        is_delete: bool = False,
    ) -> None:
        self.store.set_current_balance(circle.id, after)
        self.session.add(
            BalanceChange(
                circle_id=circle.id,
                user_id=user_id,
                kind=kind,
                is_delete=is_delete,
                amount=amount,
                balance_before=before,
                balance_after=after,
                entry_id=entry_id,
            )
        )

    def journal(self, circle_id: int, limit: int = 50) -> list[BalanceChange]:
        self.store.get_circle(circle_id)
        stmt = (
            select(BalanceChange)
            .where(BalanceChange.circle_id == circle_id)
            .order_by(BalanceChange.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


@dataclass(frozen=True)
class ReconcileResult:
    circle_id: int
    cached: int
    reconstructed: int

    @property
    def repaired(self) -> bool:
        return self.cached != self.reconstructed


class ReconciliationService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def reconcile(self, circle_id: Optional[int] = None) -> list[ReconcileResult]:
        if circle_id is not None:
            circles = [self.store.get_circle(circle_id)]
        else:
            circles = self.store.list_circles()

        results: list[ReconcileResult] = []
        for circle in circles:
            circle = self.store.lock_circle(circle.id)
            # whole log, read under the lock
            events = self.store.list_events([circle.id])
            result = ReconcileResult(
                circle_id=circle.id,
                cached=circle.current_balance,
                reconstructed=balance_at(events, datetime.max),
            )
            if result.repaired:
                logger.warning(
                    f"reconcile: invariant_violation circle_id={circle.id} "
                    f"cached={result.cached} reconstructed={result.reconstructed}"
                )
                self.store.set_current_balance(circle.id, result.reconstructed)
                self.session.add(
                    BalanceChange(
                        circle_id=circle.id,
                        user_id=None,
                        kind=BalanceChangeKind.reconcile,
                        amount=result.reconstructed,
                        balance_before=result.cached,
                        balance_after=result.reconstructed,
                    )
                )
            results.append(result)

        self.session.commit()
        repaired = sum(1 for r in results if r.repaired)
        logger.info(f"reconcile: circles={len(results)} repaired={repaired}")
        return results

    def rebuild_monthly_aggregates(self, circle_id: Optional[int] = None) -> int:
        if circle_id is not None:
            circles = [self.store.get_circle(circle_id)]
        else:
            circles = self.store.list_circles()
        for circle in circles:
            rebuild_monthly_aggregates(self.session, circle.id)
        return len(circles)


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def reconstruct_balance(self, circle_id: int, at: Optional[datetime] = None) -> int:
        self.store.get_circle(circle_id)
        if at is not None and at.tzinfo is not None:
            raise ValueError("Timestamps must be local wall-clock times")
        at = at or local_now()
        checkpoint = self.store.get_latest_checkpoint(circle_id, before=at)
        since = checkpoint.occurred_at if checkpoint else None
        events = self.store.list_events([circle_id], since=since, before=at)
        return balance_at(events, at)

    def history(
        self, circle_id: int, start: Optional[datetime] = None
    ) -> list[tuple[LedgerEvent, int]]:
        self.store.get_circle(circle_id)
        return reconstruct(self.store.list_events([circle_id]), start=start)


class AnalyticsService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def _events(self, circle_ids: list[int], window: Window, mode: AggregateMode):
        end = datetime.combine(window.end, time.max)
        if mode == AggregateMode.tag_expense_sum:
            since = datetime.combine(window.start, time.min)
            return self.store.list_events(
                circle_ids, [EventKind.debit], since=since, before=end
            )
        return self.store.list_events(circle_ids, before=end)

    def aggregate_period(
        self, mode: AggregateMode, window: Window, circle_ids: Iterable[int]
    ) -> list[SeriesPoint]:
        ids = list(dict.fromkeys(circle_ids))
        if not ids:
            raise ValueError("At least one circle is required")
        if mode != AggregateMode.total_balance and len(ids) != 1:
            raise ValueError(f"{mode.value} needs exactly one circle")
        events = self._events(ids, window, mode)
        return aggregate_period(
            events, window.granularity, window.start, window.end, mode, circle_ids=ids
        )

    def circle_table(
        self, window: Window, circle_ids: Iterable[int]
    ) -> list[dict[str, object]]:
        circles = self.store.list_circles(list(circle_ids))
        if not circles:
            return []
        names = {circle.id: circle.name for circle in circles}
        events = self._events(list(names), window, AggregateMode.circle_balance)
        return circle_balance_table(
            events, window.granularity, window.start, window.end, names
        )

    def tag_table(self, window: Window, circle_id: int) -> list[dict[str, object]]:
        points = self.aggregate_period(AggregateMode.tag_expense_sum, window, [circle_id])
        keys = bucket_keys(window.start, window.end, window.granularity)
        return pivot_series(points, keys)


class FeedService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = EventStore(session)

    def paginate_feed(
        self,
        circle_ids: Iterable[int],
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        *,
        use_cached_diffs: bool = True,
    ) -> FeedPage:
        ids = list(dict.fromkeys(circle_ids))
        if not ids:
            raise ValueError("At least one circle is required")
        settings = get_settings()
        limit = min(max(limit or settings.feed_page_limit, 1), settings.feed_max_limit)

        feed_cursor = decode_cursor(cursor)
        now = local_now()
        bound = feed_cursor.occurred_at if feed_cursor else now
        events = self.store.list_events(ids, before=bound)
        return paginate(
            events,
            feed_cursor,
            limit,
            now=now,
            use_cached_diffs=use_cached_diffs,
        )
