"""
Refresh trigger and metrics endpoints
"""

from datetime import datetime, timedelta
from typing import Optional
import json
import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_runtime
from api.errors import error_response
from core.exceptions import (
    InvalidTriggerError,
    SyncException,
)
from refresh.audit import AuditLogger
from refresh.metrics import build_refresh_metrics, clamp_days
from refresh.runtime import RefreshRuntime
from schemas.metrics import RefreshMetricsResponse
from schemas.refresh import TriggerRequest, TriggerResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh", tags=["Refresh"])


async def _parse_trigger(request: Request) -> TriggerRequest:
    raw = await request.body()
    if not raw.strip():
        return TriggerRequest()
    
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidTriggerError("Invalid JSON in request body", original_exception=e)
    
    if not isinstance(payload, dict):
        raise InvalidTriggerError("Request body must be a JSON object")
    
    try:
        return TriggerRequest(**payload)
    except ValidationError as e:
        raise InvalidTriggerError(
            "Invalid request",
            context={"errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]}
        )


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_refresh(
    request: Request,
    db: AsyncSession = Depends(get_db),
    runtime: RefreshRuntime = Depends(get_runtime)
):
    """
    Trigger a refresh.
    
    - no table_name: run every enabled table (throttled and in-progress tables
      are reported, not run)
    - table_name: run that table; 404 unknown, 400 disabled, 429 throttled,
      409 already in progress
    """
    request_id = getattr(request.state, "request_id", None)
    
    try:
        trigger = await _parse_trigger(request)
    except InvalidTriggerError as e:
        logger.warning(f"Rejected trigger request {request_id}: {e.message}")
        return error_response(e)
    
    orchestrator = runtime.orchestrator(db)
    
    if trigger.table_name is None:
        logger.info(f"Full refresh triggered (force={trigger.force}, request_id={request_id})")
        summary = await orchestrator.run_all(force=trigger.force)
        failures = [r for r in summary.results if not r.success and not r.skipped]
        return TriggerResponse(
            success=not failures,
            message=f"Triggered refresh for {len(summary.results)} tables",
            type="full",
            details={
                "results": [r.model_dump() for r in summary.results],
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
    
    logger.info(
        f"Refresh triggered for {trigger.table_name} "
        f"(force={trigger.force}, request_id={request_id})"
    )
    try:
        outcome = await orchestrator.refresh_table(trigger.table_name, force=trigger.force)
    except SyncException as e:
        logger.error(f"Refresh of {trigger.table_name} failed (request_id={request_id}): {e.message}")
        return error_response(e, table=trigger.table_name)
    
    return TriggerResponse(
        success=True,
        message=f"Refresh triggered for {trigger.table_name}",
        type="single",
        table=trigger.table_name,
        details=outcome.model_dump(),
    )


@router.get("/metrics", response_model=RefreshMetricsResponse)
async def refresh_metrics(
    days: int = Query(7, description="Window in days, clamped to 1..30"),
    table_name: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """Daily and per-table refresh metrics derived from the audit log"""
    days = clamp_days(days)
    now = datetime.utcnow()
    logs = await AuditLogger(db).completed_since(now - timedelta(days=days), table_name=table_name)
    return build_refresh_metrics(logs, days, now=now)
