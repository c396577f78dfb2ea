from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, selectinload

from ledger import Checkpoint, Credit, Debit, LedgerEvent
from models import (
    CheckpointEntry,
    Circle,
    CreditEntry,
    DebitEntry,
    EventKind,
    ExpenseCategory,
    IncomeCategory,
    LedgerEntry,
)


def to_event(entry: LedgerEntry) -> LedgerEvent:
    common = dict(
        id=entry.id,
        circle_id=entry.circle_id,
        user_id=entry.user_id,
        occurred_at=entry.occurred_at,
        amount=entry.amount,
        seq=entry.id,
        note=entry.note,
    )
    if isinstance(entry, CheckpointEntry):
        return Checkpoint(**common, diff_from_previous=entry.diff_from_previous)
    tags = tuple(tag.name for tag in entry.tags)
    if isinstance(entry, DebitEntry):
        return Debit(
            **common,
            category=entry.expense_category or ExpenseCategory.other,
            tags=tags,
            place=entry.place,
        )
    if isinstance(entry, CreditEntry):
        return Credit(
            **common,
            category=entry.income_category or IncomeCategory.other,
            tags=tags,
            source=entry.source,
        )
    raise TypeError(f"Unrecognized ledger entry kind: {entry.kind!r}")


class EventStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_events(
        self,
        circle_ids: Iterable[int],
        kinds: Optional[Iterable[EventKind]] = None,
        *,
        after: Optional[datetime] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
    ) -> list[LedgerEvent]:
        ids = list(circle_ids)
        if not ids:
            return []
        stmt = (
            select(LedgerEntry)
            .options(selectinload(LedgerEntry.tags))
            .where(LedgerEntry.circle_id.in_(ids))
        )
        if kinds is not None:
            stmt = stmt.where(LedgerEntry.kind.in_([EventKind(k).value for k in kinds]))
        if after is not None:
            stmt = stmt.where(LedgerEntry.occurred_at > after)
        if since is not None:
            stmt = stmt.where(LedgerEntry.occurred_at >= since)
        if before is not None:
            stmt = stmt.where(LedgerEntry.occurred_at <= before)
        stmt = stmt.order_by(LedgerEntry.occurred_at, LedgerEntry.id)
        return [to_event(entry) for entry in self.session.scalars(stmt)]

    def get_circle(self, circle_id: int) -> Circle:
        circle = self.session.get(Circle, circle_id)
        if not circle:
            raise ValueError("Circle not found")
        return circle

    def list_circles(self, circle_ids: Optional[Iterable[int]] = None) -> list[Circle]:
        stmt = select(Circle).order_by(Circle.id)
        if circle_ids is not None:
            stmt = stmt.where(Circle.id.in_(list(circle_ids)))
        return list(self.session.scalars(stmt).all())

    def lock_circle(self, circle_id: int) -> Circle:
        circle = self.session.scalar(
            select(Circle)
            .where(Circle.id == circle_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not circle:
            raise ValueError("Circle not found")
        return circle

    def set_current_balance(self, circle_id: int, amount: int) -> None:
        self.session.execute(
            update(Circle)
            .where(Circle.id == circle_id)
            .values(current_balance=amount)
            .execution_options(synchronize_session="fetch")
        )

    def get_entry(self, entry_id: int) -> LedgerEntry:
        entry = self.session.scalar(
            select(LedgerEntry)
            .options(selectinload(LedgerEntry.tags))
            .where(LedgerEntry.id == entry_id)
        )
        if not entry:
            raise ValueError("Entry not found")
        return entry

    def get_latest_checkpoint(
        self, circle_id: int, before: Optional[datetime] = None
    ) -> Optional[Checkpoint]:
        stmt = select(CheckpointEntry).where(CheckpointEntry.circle_id == circle_id)
        if before is not None:
            stmt = stmt.where(CheckpointEntry.occurred_at <= before)
        stmt = stmt.order_by(
            CheckpointEntry.occurred_at.desc(), CheckpointEntry.id.desc()
        ).limit(1)
        entry = self.session.scalar(stmt)
        return to_event(entry) if entry else None

    def has_checkpoint_after(self, circle_id: int, event: LedgerEvent) -> bool:
        later = or_(
            CheckpointEntry.occurred_at > event.occurred_at,
            and_(
                CheckpointEntry.occurred_at == event.occurred_at,
                CheckpointEntry.id > event.id,
            ),
        )
        stmt = (
            select(CheckpointEntry.id)
            .where(
                CheckpointEntry.circle_id == circle_id,
                CheckpointEntry.kind == EventKind.checkpoint.value,
                CheckpointEntry.id != event.id,
                later,
            )
            .limit(1)
        )
        return self.session.scalar(stmt) is not None
