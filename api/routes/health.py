"""
Health check endpoint with database and refresh status
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from models.base import DeliveryStatus, RefreshStatus
from models.webhook import WebhookDelivery
from refresh.audit import AuditLogger
from refresh.checkpoint import CheckpointStore
from refresh.registry import RefreshConfigRegistry
from schemas.api import HealthCheckResponse, TableHealth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

HEALTH_WINDOW = timedelta(days=7)


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    
    Returns:
    - Database connectivity status
    - Per-table refresh status (last result, 7-day success rate, recent errors)
    - Active checkpoints and webhook backlog
    """
    request_id = getattr(request.state, "request_id", None)
    
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")
    
    tables = []
    active_checkpoints = 0
    pending_deliveries = 0
    failed_tables = 0
    
    if db_connected:
        try:
            since = datetime.utcnow() - HEALTH_WINDOW
            audit = AuditLogger(db)
            checkpoints = {
                (cp.table_schema, cp.table_name): cp
                for cp in await CheckpointStore(db).list_active()
            }
            active_checkpoints = len(checkpoints)
            
            configs = await RefreshConfigRegistry(db).list_enabled()
            for config in configs:
                latest = await audit.latest_for_table(config.table_name)
                errors = await audit.recent_errors(config.table_name, limit=3)
                checkpoint = checkpoints.get((config.table_schema, config.table_name))
                last_status = latest.status.value if latest else None
                if last_status == RefreshStatus.FAILED.value:
                    failed_tables += 1
                
                tables.append(TableHealth(
                    table_schema=config.table_schema,
                    table_name=config.table_name,
                    is_enabled=config.is_enabled,
                    last_refresh_at=config.last_refresh_at,
                    next_refresh_at=config.next_refresh_at,
                    last_status=last_status,
                    success_rate=await audit.success_rate(config.table_name, since),
                    average_duration_ms=await audit.average_duration_ms(config.table_name, since),
                    active_checkpoint_offset=checkpoint.offset if checkpoint else None,
                    recent_errors=[e.error_message for e in errors if e.error_message],
                ))
            
            result = await db.execute(
                select(func.count()).select_from(WebhookDelivery).where(
                    WebhookDelivery.status.in_([DeliveryStatus.PENDING, DeliveryStatus.RETRYING])
                )
            )
            pending_deliveries = result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to collect refresh status (request_id={request_id}): {str(e)}")
    
    return HealthCheckResponse(
        status=HealthCheckResponse.determine_status(db_connected, failed_tables, len(tables)),
        timestamp=datetime.utcnow(),
        request_id=request_id,
        database_connected=db_connected,
        tables=tables,
        active_checkpoints=active_checkpoints,
        pending_webhook_deliveries=pending_deliveries,
        failed_tables=failed_tables,
    )
