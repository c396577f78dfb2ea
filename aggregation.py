from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Iterable, Optional

from ledger import LedgerEvent, sort_events
from models import EventKind
from periods import Granularity, bucket_key, bucket_keys, iter_days
from reconstruction import balance_before, reconstruct

UNCATEGORIZED_TAG = "uncategorized"


class AggregateMode(str, Enum):
    circle_balance = "circle-balance"
    total_balance = "total-balance"
    tag_expense_sum = "tag-expense-sum"


@dataclass(frozen=True)
class SeriesPoint:
    bucket_key: str
    value: int
    series: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"bucket_key": self.bucket_key, "value": self.value}
        if self.series is not None:
            data["series"] = self.series
        return data


@dataclass(frozen=True)
class TagTotal:
    tag: str
    total: int
    count: int
    circle_id: Optional[int] = None


def effective_tags(event: LedgerEvent) -> tuple[str, ...]:
    tags = tuple(dict.fromkeys(event.tags))
    return tags or (UNCATEGORIZED_TAG,)


def circle_balance_buckets(
    events: Iterable[LedgerEvent],
    granularity: Granularity,
    start: date,
    end: date,
) -> dict[str, int]:
    events = list(events)
    window_open = datetime.combine(start, time.min)
    balance = balance_before(events, window_open)
    steps = reconstruct(events, start=window_open)

    buckets: dict[str, int] = {}
    index = 0
    for day in iter_days(start, end):
        while index < len(steps) and steps[index][0].occurred_at.date() <= day:
            balance = steps[index][1]
            index += 1
        # later days overwrite earlier ones inside a coarser bucket
        buckets[bucket_key(day, granularity)] = balance
    return buckets


def _group_by_circle(events: Iterable[LedgerEvent]) -> dict[int, list[LedgerEvent]]:
    grouped: dict[int, list[LedgerEvent]] = {}
    for event in sort_events(events):
        grouped.setdefault(event.circle_id, []).append(event)
    return grouped


def _tag_expense_points(
    events: Iterable[LedgerEvent],
    granularity: Granularity,
    start: date,
    end: date,
) -> list[SeriesPoint]:
    sums: dict[tuple[str, str], int] = {}
    for event in sort_events(events):
        if event.kind != EventKind.debit:
            continue
        day = event.occurred_at.date()
        if day < start or day > end:
            continue
        key = bucket_key(day, granularity)
        for tag in effective_tags(event):
            sums[(key, tag)] = sums.get((key, tag), 0) + event.amount

    # stable sort keeps first-seen tag order inside a bucket
    ordered = sorted(sums.items(), key=lambda item: item[0][0])
    return [SeriesPoint(key, value, series=tag) for (key, tag), value in ordered]


def aggregate_period(
    events: Iterable[LedgerEvent],
    granularity: Granularity,
    window_start: date,
    window_end: date,
    mode: AggregateMode,
    circle_ids: Optional[Iterable[int]] = None,
) -> list[SeriesPoint]:
    if window_start > window_end:
        return []
    events = sort_events(events)
    if circle_ids is not None:
        allowed = set(circle_ids)
        events = [e for e in events if e.circle_id in allowed]
    else:
        allowed = None

    if mode == AggregateMode.tag_expense_sum:
        return _tag_expense_points(events, granularity, window_start, window_end)

    keys = bucket_keys(window_start, window_end, granularity)
    if mode == AggregateMode.circle_balance:
        buckets = circle_balance_buckets(events, granularity, window_start, window_end)
        return [SeriesPoint(key, buckets[key]) for key in keys]

    if mode == AggregateMode.total_balance:
        totals = dict.fromkeys(keys, 0)
        grouped = _group_by_circle(events)
        for circle_id in sorted(grouped if allowed is None else allowed):
            buckets = circle_balance_buckets(
                grouped.get(circle_id, []), granularity, window_start, window_end
            )
            for key in keys:
                totals[key] += buckets[key]
        return [SeriesPoint(key, totals[key]) for key in keys]

    raise ValueError(f"Unknown aggregate mode: {mode!r}")


def circle_balance_table(
    events: Iterable[LedgerEvent],
    granularity: Granularity,
    start: date,
    end: date,
    names: dict[int, str],
) -> list[dict[str, object]]:
    grouped = _group_by_circle(events)
    keys = bucket_keys(start, end, granularity)
    rows: list[dict[str, object]] = [{"bucket_key": key} for key in keys]
    for circle_id, name in names.items():
        buckets = circle_balance_buckets(
            grouped.get(circle_id, []), granularity, start, end
        )
        for row in rows:
            row[name] = buckets[row["bucket_key"]]
    return rows


def pivot_series(points: Iterable[SeriesPoint], keys: list[str]) -> list[dict[str, object]]:
    values: dict[tuple[str, str], int] = {}
    series_names: dict[str, None] = {}
    for point in points:
        name = point.series or "value"
        series_names.setdefault(name, None)
        values[(point.bucket_key, name)] = point.value

    rows: list[dict[str, object]] = []
    for key in keys:
        row: dict[str, object] = {"bucket_key": key}
        for name in series_names:
            row[name] = values.get((key, name), 0)
        rows.append(row)
    return rows


def aggregate_tags(
    events: Iterable[LedgerEvent],
    month: Optional[tuple[int, int]] = None,
    limit: Optional[int] = 10,
    *,
    by_circle: bool = False,
    include_uncategorized: bool = True,
) -> list[TagTotal]:
    totals: dict[tuple[Optional[int], str], list[int]] = {}
    for event in sort_events(events):
        if event.kind != EventKind.debit:
            continue
        if month and (event.occurred_at.year, event.occurred_at.month) != month:
            continue
        if not event.tags and not include_uncategorized:
            continue
        for tag in effective_tags(event):
            key = (event.circle_id if by_circle else None, tag)
            entry = totals.setdefault(key, [0, 0])
            entry[0] += event.amount
            entry[1] += 1

    ranked = sorted(totals.items(), key=lambda item: -item[1][0])
    if limit is not None:
        ranked = ranked[:limit]
    return [
        TagTotal(tag=tag, total=total, count=count, circle_id=circle_id)
        for (circle_id, tag), (total, count) in ranked
    ]
