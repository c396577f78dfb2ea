"""Backward cursor pagination over a merged, time-ordered event stream.

Debits and credits on a page carry the balance right after them, computed by
the reconstructor from a known-good opening balance per circle. Checkpoints
carry their difference to the preceding checkpoint.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ledger import LedgerEvent, order_key, signed_amount, sort_events
from models import EventKind
from periods import local_now
from reconstruction import balance_preceding, checkpoint_diffs, reconstruct


@dataclass(frozen=True)
class FeedCursor:
    occurred_at: datetime
    seq: Optional[int] = None
    event_id: Optional[int] = None

    @classmethod
    def after(cls, event: LedgerEvent) -> "FeedCursor":
        return cls(event.occurred_at, event.seq, event.id)

    def admits(self, event: LedgerEvent) -> bool:
        # strictly older than the cursor
        if self.seq is None:
            return event.occurred_at < self.occurred_at
        event_id = self.event_id if self.event_id is not None else -1
        return order_key(event) < (self.occurred_at, self.seq, event_id)


@dataclass
class FeedItem:
    event: LedgerEvent
    balance_after: Optional[int] = None
    diff_from_previous: Optional[int] = None

    def as_dict(self) -> dict[str, object]:
        event = self.event
        data: dict[str, object] = {
            "id": event.id,
            "kind": event.kind.value,
            "circle_id": event.circle_id,
            "user_id": event.user_id,
            "amount": signed_amount(event),
            "occurred_at": event.occurred_at.isoformat(),
            "note": event.note,
        }
        if event.kind == EventKind.checkpoint:
            data["diff_from_previous"] = self.diff_from_previous
        else:
            data["balance_after"] = self.balance_after
            data["category"] = event.category.value
            data["tags"] = list(event.tags)
            if event.kind == EventKind.debit:
                data["place"] = event.place
            else:
                data["source"] = event.source
        return data


@dataclass
class FeedPage:
    items: list[FeedItem]
    has_more: bool
    next_cursor: Optional[FeedCursor] = None
    opening_balances: dict[int, int] = field(default_factory=dict)


def _oldest_per_circle(events: Iterable[LedgerEvent]) -> dict[int, LedgerEvent]:
    oldest: dict[int, LedgerEvent] = {}
    for event in events:
        current = oldest.get(event.circle_id)
        if current is None or order_key(event) < order_key(current):
            oldest[event.circle_id] = event
    return oldest


def _annotate(
    window: list[LedgerEvent],
    openings: dict[int, int],
    diffs: dict[int, Optional[int]],
) -> list[FeedItem]:
    balances: dict[int, int] = {}
    for circle_id, opening in openings.items():
        circle_events = [e for e in window if e.circle_id == circle_id]
        for event, balance in reconstruct(circle_events, seed=opening):
            balances[event.id] = balance

    items: list[FeedItem] = []
    for event in window:
        if event.kind == EventKind.checkpoint:
            items.append(FeedItem(event, diff_from_previous=diffs.get(event.id)))
        else:
            items.append(FeedItem(event, balance_after=balances.get(event.id)))
    return items


def paginate(
    events: Iterable[LedgerEvent],
    cursor: Optional[FeedCursor] = None,
    limit: int = 20,
    *,
    now: Optional[datetime] = None,
    use_cached_diffs: bool = True,
) -> FeedPage:
    """Return the ``limit`` newest events strictly older than ``cursor``.

    ``events`` is the snapshot of every circle in scope, at least up to the
    cursor; everything older than a page is needed to seed its balances.
    """
    ordered = sort_events(events)
    cursor = cursor or FeedCursor(now or local_now())
    limit = max(limit, 1)

    candidates: list[LedgerEvent] = []
    for event in reversed(ordered):
        if cursor.admits(event):
            candidates.append(event)
            if len(candidates) > limit:
                break
    has_more = len(candidates) > limit
    window = candidates[:limit]
    if not window:
        return FeedPage(items=[], has_more=False)

    histories: dict[int, list[LedgerEvent]] = {}
    for event in ordered:
        histories.setdefault(event.circle_id, []).append(event)

    openings = {
        circle_id: balance_preceding(histories[circle_id], oldest)
        for circle_id, oldest in _oldest_per_circle(window).items()
    }

    diffs: dict[int, Optional[int]] = {}
    for event in window:
        if event.kind != EventKind.checkpoint:
            continue
        if use_cached_diffs:
            diffs[event.id] = event.diff_from_previous
        elif event.id not in diffs:
            diffs.update(checkpoint_diffs(histories[event.circle_id]))

    return FeedPage(
        items=_annotate(window, openings, diffs),
        has_more=has_more,
        next_cursor=FeedCursor.after(window[-1]),
        opening_balances=openings,
    )


def merge_pages(newer: FeedPage, older: FeedPage) -> FeedPage:
    """Combine two fetched pages and recompute balances over the union.

    Balances are re-derived from the opening balance that precedes the
    oldest item of each circle; per-page ``balance_after`` values are ignored.
    """
    by_id: dict[int, FeedItem] = {}
    for item in newer.items + older.items:
        by_id.setdefault(item.event.id, item)
    if not by_id:
        return FeedPage(items=[], has_more=older.has_more, next_cursor=older.next_cursor)

    union = sorted((item.event for item in by_id.values()), key=order_key, reverse=True)

    openings: dict[int, int] = {}
    for circle_id, oldest in _oldest_per_circle(union).items():
        for page in (older, newer):
            page_oldest = _oldest_per_circle(item.event for item in page.items)
            candidate = page_oldest.get(circle_id)
            if (
                candidate is not None
                and candidate.id == oldest.id
                and circle_id in page.opening_balances
            ):
                openings[circle_id] = page.opening_balances[circle_id]
                break

    diffs = {
        item.event.id: item.diff_from_previous
        for item in by_id.values()
        if item.event.kind == EventKind.checkpoint
    }

    tail = older
    oldest_overall = union[-1]
    if not any(item.event.id == oldest_overall.id for item in older.items):
        tail = newer
    return FeedPage(
        items=_annotate(union, openings, diffs),
        has_more=tail.has_more,
        next_cursor=tail.next_cursor,
        opening_balances=openings,
    )
