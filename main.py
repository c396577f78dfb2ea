import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from aggregation import AggregateMode
from config import get_settings
from cursors import encode_cursor
from database import SessionLocal
from periods import Granularity, Window, parse_month, resolve_window
from scheduler import SchedulerManager
from schemas import (
    BalanceChangeOut,
    CheckpointIn,
    CircleIn,
    CircleOut,
    CreditIn,
    DebitIn,
    ReconcileOut,
)
from services import (
    AnalyticsService,
    BalanceService,
    CircleService,
    FeedService,
    LedgerService,
    ReconciliationService,
    TagService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Circle Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if message.lower().endswith("not found") else 400
    return HTTPException(status_code=status, detail=message)


def window_from_request(request: Request) -> Window:
    granularity_param = request.query_params.get("granularity", "daily")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        granularity = Granularity(granularity_param)
        return resolve_window(granularity, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _entry_payload(entry) -> dict:
    return {
        "id": entry.id,
        "circle_id": entry.circle_id,
        "kind": entry.kind,
        "amount": entry.amount,
        "occurred_at": entry.occurred_at.isoformat(),
    }


@app.post("/api/circles", response_model=CircleOut, status_code=201)
def create_circle(payload: CircleIn, db: Session = Depends(get_db)):
    return CircleService(db).create(payload)


@app.get("/api/circles", response_model=List[CircleOut])
def list_circles(db: Session = Depends(get_db)):
    return CircleService(db).list_all()


@app.get("/api/circles/{circle_id}", response_model=CircleOut)
def get_circle(circle_id: int, db: Session = Depends(get_db)):
    try:
        return CircleService(db).get(circle_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/circles/{circle_id}/checkpoints", status_code=201)
def create_checkpoint(
    circle_id: int, payload: CheckpointIn, db: Session = Depends(get_db)
):
    try:
        entry = LedgerService(db).record_checkpoint(circle_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    data = _entry_payload(entry)
    data["diff_from_previous"] = entry.diff_from_previous
    return data


@app.post("/api/circles/{circle_id}/debits", status_code=201)
def create_debit(circle_id: int, payload: DebitIn, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).record_debit(circle_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    data = _entry_payload(entry)
    data["tags"] = [tag.name for tag in entry.tags]
    return data


@app.post("/api/circles/{circle_id}/credits", status_code=201)
def create_credit(circle_id: int, payload: CreditIn, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).record_credit(circle_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    data = _entry_payload(entry)
    data["tags"] = [tag.name for tag in entry.tags]
    return data


@app.delete("/api/entries/{entry_id}", status_code=204)
def delete_entry(
    entry_id: int,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        LedgerService(db).delete_entry(entry_id, user_id=user_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/circles/{circle_id}/balance")
def circle_balance(
    circle_id: int,
    at: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    try:
        circle = CircleService(db).get(circle_id)
        balance = BalanceService(db).reconstruct_balance(circle_id, at)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "circle_id": circle_id,
        "at": at.isoformat() if at else None,
        "balance": balance,
        "cached_balance": circle.current_balance,
    }


@app.get("/api/circles/{circle_id}/journal", response_model=List[BalanceChangeOut])
def circle_journal(
    circle_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    try:
        return LedgerService(db).journal(circle_id, limit=limit)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/feed")
def api_feed(
    circle_id: List[int] = Query(...),
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        page = FeedService(db).paginate_feed(circle_id, cursor, limit)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "items": [item.as_dict() for item in page.items],
        "has_more": page.has_more,
        "next_cursor": encode_cursor(page.next_cursor) if page.has_more else None,
    }


@app.get("/api/analytics")
def api_analytics(
    request: Request,
    view: str = "total",
    circle_id: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
):
    window = window_from_request(request)
    service = AnalyticsService(db)
    try:
        if view == "total":
            points = service.aggregate_period(
                AggregateMode.total_balance, window, circle_id
            )
            rows = [point.as_dict() for point in points]
        elif view == "circle":
            ids = circle_id or [c.id for c in CircleService(db).list_all()]
            rows = service.circle_table(window, ids)
        elif view == "tag":
            if len(circle_id) != 1:
                raise ValueError("Tag view needs exactly one circle")
            rows = service.tag_table(window, circle_id[0])
        else:
            raise ValueError(f"Unknown view: {view}")
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "granularity": window.granularity.value,
        "start": window.start.isoformat(),
        "end": window.end.isoformat(),
        "view": view,
        "rows": rows,
    }


@app.get("/api/circles/{circle_id}/tags")
def circle_tags(
    circle_id: int,
    month: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    try:
        selected = parse_month(month) if month else None
        totals = TagService(db).aggregate_tags(circle_id, selected, limit)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [
        {"tag": total.tag, "total": total.total, "count": total.count}
        for total in totals
    ]


@app.get("/api/summary")
def api_summary(
    circle_id: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
):
    circles = CircleService(db).list_all()
    if circle_id:
        wanted = set(circle_id)
        circles = [c for c in circles if c.id in wanted]
    ids = [c.id for c in circles]
    tags = TagService(db).summary(ids) if ids else []
    return {
        "circles": [
            {"id": c.id, "name": c.name, "current_balance": c.current_balance}
            for c in circles
        ],
        "total_balance": sum(c.current_balance for c in circles),
        "tags": [
            {
                "circle_id": total.circle_id,
                "tag": total.tag,
                "total": total.total,
                "count": total.count,
            }
            for total in tags
        ],
    }


@app.post("/admin/reconcile", response_model=List[ReconcileOut])
def admin_reconcile(circle_id: Optional[int] = None, db: Session = Depends(get_db)):
    try:
        results = ReconciliationService(db).reconcile(circle_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [
        ReconcileOut(
            circle_id=r.circle_id,
            cached=r.cached,
            reconstructed=r.reconstructed,
            repaired=r.repaired,
        )
        for r in results
    ]


@app.post("/admin/rebuild-aggregates")
def admin_rebuild_aggregates(
    circle_id: Optional[int] = None, db: Session = Depends(get_db)
):
    try:
        count = ReconciliationService(db).rebuild_monthly_aggregates(circle_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    logger.info(f"Rebuilt monthly aggregates for {count} circles")
    return {"circles": count}
