from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional

from ledger import Checkpoint, LedgerEvent, order_key, sort_events
from models import EventKind


def apply_event(balance: int, event: LedgerEvent) -> int:
    if event.kind == EventKind.checkpoint:
        return event.amount
    if event.kind == EventKind.debit:
        return balance - event.amount
    if event.kind == EventKind.credit:
        return balance + event.amount
    raise TypeError(f"Unrecognized event kind: {event.kind!r}")


def _fold(
    ordered: list[LedgerEvent],
    include: Callable[[LedgerEvent], bool],
    seed: int,
) -> int:
    balance = seed
    for event in ordered:
        if not include(event):
            break
        balance = apply_event(balance, event)
    return balance


def reconstruct(
    events: Iterable[LedgerEvent],
    start: Optional[datetime] = None,
    seed: int = 0,
) -> list[tuple[LedgerEvent, int]]:
    """Walk events in order and pair each one with the balance right after it.

    When ``start`` is given, everything ordered before it only contributes to
    the opening balance (the last checkpoint before ``start`` plus the flows
    after that checkpoint) and is not emitted.
    """
    ordered = sort_events(events)
    balance = seed
    index = 0
    if start is not None:
        while index < len(ordered) and ordered[index].occurred_at < start:
            balance = apply_event(balance, ordered[index])
            index += 1

    out: list[tuple[LedgerEvent, int]] = []
    for event in ordered[index:]:
        balance = apply_event(balance, event)
        out.append((event, balance))
    return out


def balance_at(events: Iterable[LedgerEvent], instant: datetime, seed: int = 0) -> int:
    return _fold(sort_events(events), lambda e: e.occurred_at <= instant, seed)


def balance_before(
    events: Iterable[LedgerEvent], instant: datetime, seed: int = 0
) -> int:
    return _fold(sort_events(events), lambda e: e.occurred_at < instant, seed)


def balance_preceding(
    events: Iterable[LedgerEvent], anchor: LedgerEvent, seed: int = 0
) -> int:
    key = order_key(anchor)
    return _fold(sort_events(events), lambda e: order_key(e) < key, seed)


def previous_checkpoint(
    events: Iterable[LedgerEvent], event: LedgerEvent
) -> Optional[Checkpoint]:
    key = order_key(event)
    previous: Optional[Checkpoint] = None
    for candidate in sort_events(events):
        if order_key(candidate) >= key:
            break
        if candidate.kind == EventKind.checkpoint:
            previous = candidate
    return previous


def next_checkpoint(
    events: Iterable[LedgerEvent], event: LedgerEvent
) -> Optional[Checkpoint]:
    key = order_key(event)
    for candidate in sort_events(events):
        if candidate.kind == EventKind.checkpoint and order_key(candidate) > key:
            return candidate
    return None


def diff_from_previous(
    events: Iterable[LedgerEvent], checkpoint: Checkpoint
) -> Optional[int]:
    previous = previous_checkpoint(events, checkpoint)
    if previous is None:
        return None
    return checkpoint.amount - previous.amount


def checkpoint_diffs(events: Iterable[LedgerEvent]) -> dict[int, Optional[int]]:
    # Must stay in agreement with diff_from_previous; both use order_key.
    diffs: dict[int, Optional[int]] = {}
    previous: Optional[Checkpoint] = None
    for event in sort_events(events):
        if event.kind != EventKind.checkpoint:
            continue
        diffs[event.id] = None if previous is None else event.amount - previous.amount
        previous = event
    return diffs


def cache_after_create(
    current: int,
    event: LedgerEvent,
    *,
    superseded: bool = False,
    later_flows: Iterable[LedgerEvent] = (),
) -> int:
    """New cached balance after ``event`` was appended.

    ``superseded`` means a later checkpoint already governs the present
    balance, so a back-dated event cannot move it. A back-dated checkpoint
    that is not superseded resets the balance, and the flows ordered after it
    (``later_flows``) are replayed on top.
    """
    if superseded:
        return current
    if event.kind == EventKind.checkpoint:
        key = order_key(event)
        replay = [e for e in later_flows if order_key(e) > key]
        return _fold(sort_events(replay), lambda e: True, event.amount)
    return apply_event(current, event)


def cache_after_delete(current: int, event: LedgerEvent, *, superseded: bool = False) -> int:
    if event.kind == EventKind.checkpoint:
        raise ValueError("Checkpoint removal needs a full recomputation from the log")
    if superseded:
        return current
    if event.kind == EventKind.debit:
        return current + event.amount
    return current - event.amount
