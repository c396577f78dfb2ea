"""In-memory ledger events consumed by the reconstruction, aggregation and feed code.

Events form a closed union of three frozen dataclasses. Each variant carries its
``kind`` discriminant at class level so it can never be missing or wrong.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional, Union

from models import EventKind, ExpenseCategory, IncomeCategory


@dataclass(frozen=True)
class Checkpoint:
    kind: ClassVar[EventKind] = EventKind.checkpoint

    id: int
    circle_id: int
    user_id: int
    occurred_at: datetime
    amount: int
    seq: int = 0
    note: Optional[str] = None
    diff_from_previous: Optional[int] = None


@dataclass(frozen=True)
class Debit:
    kind: ClassVar[EventKind] = EventKind.debit

    id: int
    circle_id: int
    user_id: int
    occurred_at: datetime
    amount: int
    seq: int = 0
    category: ExpenseCategory = ExpenseCategory.other
    tags: tuple[str, ...] = field(default_factory=tuple)
    place: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class Credit:
    kind: ClassVar[EventKind] = EventKind.credit

    id: int
    circle_id: int
    user_id: int
    occurred_at: datetime
    amount: int
    seq: int = 0
    category: IncomeCategory = IncomeCategory.other
    tags: tuple[str, ...] = field(default_factory=tuple)
    source: Optional[str] = None
    note: Optional[str] = None


LedgerEvent = Union[Checkpoint, Debit, Credit]

EVENT_TYPES = (Checkpoint, Debit, Credit)


def ensure_event(event: object) -> LedgerEvent:
    if not isinstance(event, EVENT_TYPES):
        raise TypeError(f"Unrecognized ledger event: {event!r}")
    if not isinstance(event.occurred_at, datetime):
        raise TypeError(
            f"Malformed timestamp on {event.kind.value} {event.id}: {event.occurred_at!r}"
        )
    return event


def order_key(event: LedgerEvent) -> tuple[datetime, int, int]:
    # Total order: timestamp, then creation sequence, then id.
    return (event.occurred_at, event.seq, event.id)


def sort_events(events, *, reverse: bool = False) -> list[LedgerEvent]:
    return sorted((ensure_event(e) for e in events), key=order_key, reverse=reverse)


def signed_amount(event: LedgerEvent) -> int:
    if event.kind == EventKind.debit:
        return -event.amount
    return event.amount
