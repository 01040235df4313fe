"""
Outbox administration endpoints: stats, dead-letter inspection, requeue, purge.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from accrual_engine.api.deps import get_db, get_dispatcher, get_pagination_params, require_admin_token
from accrual_engine.models.schemas.base import ResponseBase
from accrual_engine.models.schemas.outbox import PurgeRequest
from accrual_engine.services import outbox_store
from accrual_engine.services.outbox_dispatcher import OutboxDispatcher
from accrual_engine.utils import get_logger, log_business_event

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = get_logger(__name__)


@router.get("/stats", response_model=ResponseBase, summary="Outbox counts by status")
async def get_outbox_stats(dispatcher: OutboxDispatcher = Depends(get_dispatcher)) -> ResponseBase:
    return ResponseBase(success=True, message="Outbox stats", data=dispatcher.stats())


@router.get("/failed", response_model=ResponseBase, summary="List dead-lettered events")
async def list_failed_events(
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db),
) -> ResponseBase:
    events = outbox_store.list_failed(db, limit=pagination["limit"], offset=pagination["offset"])
    items = [outbox_store.serialize_event(e) for e in events]
    return ResponseBase(
        success=True,
        message=f"Found {len(items)} failed event(s)",
        data={"events": items, "count": len(items), **pagination},
    )


@router.post("/{event_id}/requeue", response_model=ResponseBase, summary="Requeue a FAILED event")
async def requeue_event(
    event_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        event = outbox_store.requeue(db, event_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_business_event(
        event_type="outbox_event_requeued",
        details={"event_id": event_id, "outbox_event_type": event.event_type.value},
        request_id=request_id,
    )
    return ResponseBase(success=True, message="Event requeued", data=outbox_store.serialize_event(event))


@router.post("/purge", response_model=ResponseBase, summary="Delete old PUBLISHED events")
async def purge_published_events(
    payload: Optional[PurgeRequest] = None,
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
) -> ResponseBase:
    older_than = payload.older_than_days if payload is not None else None
    purged = await run_in_threadpool(dispatcher.purge, older_than_days=older_than)
    logger.info("Outbox purge requested", purged=purged, older_than_days=older_than)
    return ResponseBase(success=True, message=f"Purged {purged} event(s)", data={"purged": purged})
