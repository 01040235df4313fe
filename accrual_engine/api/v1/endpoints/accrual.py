"""
Accrual trigger and inspection endpoints.
"""
import time
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from accrual_engine.api.deps import get_db, get_scheduler, require_admin_token
from accrual_engine.models.db.enums import TriggerSource
from accrual_engine.models.schemas.accrual import RunDateRequest
from accrual_engine.models.schemas.base import ResponseBase
from accrual_engine.services import processing_state as state_store
from accrual_engine.services.accrual_scheduler import AccrualScheduler
from accrual_engine.utils import get_logger, log_business_event, log_performance

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = get_logger(__name__)


@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run the catch-up accrual job now"
)
async def trigger_accrual_run(
    request: Request,
    scheduler: AccrualScheduler = Depends(get_scheduler),
) -> ResponseBase:
    """Same entry point as the daily trigger; refused while another run holds the job lock."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    logger.info("Manual accrual run triggered", request_id=request_id)

    result = await run_in_threadpool(scheduler.run, trigger=TriggerSource.MANUAL)

    if result.get("reason") == "Job already running":
        raise HTTPException(status_code=409, detail="Job already running")

    log_business_event(
        event_type="manual_accrual_run",
        details={"success": result["success"], "dates": result.get("dates", [])},
        request_id=request_id
    )
    log_performance(
        operation="trigger_accrual_run",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"dates": len(result.get("dates", []))}
    )
    return ResponseBase(
        success=bool(result["success"]),
        message="Accrual run completed" if result["success"] else f"Accrual run failed: {result.get('error')}",
        data=result,
    )


@router.post(
    "/run-date",
    response_model=ResponseBase,
    summary="Process a single operational date"
)
async def trigger_accrual_for_date(
    payload: RunDateRequest,
    request: Request,
    scheduler: AccrualScheduler = Depends(get_scheduler),
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    logger.info(
        "Manual single-date accrual triggered",
        date=payload.date.isoformat(),
        force=payload.force,
        request_id=request_id
    )
    # DateInProgress and friends surface through the AccrualError handler
    result = await run_in_threadpool(
        scheduler.run_for_date, payload.date, force=payload.force, trigger=TriggerSource.MANUAL
    )

    message = "Date already completed" if result["already_completed"] else "Date processed"
    return ResponseBase(success=True, message=message, data=result)


@router.get(
    "/status",
    response_model=ResponseBase,
    summary="Job state, owed dates and recent date states"
)
async def get_accrual_status(
    limit: int = Query(14, ge=1, le=90),
    scheduler: AccrualScheduler = Depends(get_scheduler),
) -> ResponseBase:
    stats = await run_in_threadpool(scheduler.processing_stats, limit=limit)
    return ResponseBase(success=True, message="Accrual status", data=stats)


@router.get(
    "/dates",
    response_model=ResponseBase,
    summary="List daily processing states"
)
async def list_processing_dates(
    start: Optional[str] = Query(None, description="Inclusive lower bound, YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="Inclusive upper bound, YYYY-MM-DD"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> ResponseBase:
    states = state_store.list_date_states(db, start=start, end=end, limit=limit)
    items = [state_store.serialize_date_state(s) for s in states]
    return ResponseBase(
        success=True,
        message=f"Found {len(items)} date state(s)",
        data={"dates": items, "count": len(items)},
    )
