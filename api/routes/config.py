"""
Refresh configuration management endpoints
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from refresh.registry import RefreshConfigRegistry
from schemas.refresh import (
    ConfigSummary,
    RefreshConfigListResponse,
    RefreshConfigUpdate,
    RefreshConfigUpdateResponse,
    RefreshConfigView,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh/config", tags=["Configuration"])


@router.get("", response_model=RefreshConfigListResponse)
async def list_configurations(db: AsyncSession = Depends(get_db)):
    """Every table configuration by priority, with a summary"""
    configs = await RefreshConfigRegistry(db).list_all()
    views = [RefreshConfigView.from_model(c) for c in configs]
    return RefreshConfigListResponse(configurations=views, summary=ConfigSummary.from_views(views))


@router.put("", response_model=RefreshConfigUpdateResponse)
async def update_configuration(
    update: RefreshConfigUpdate,
    db: AsyncSession = Depends(get_db)
):
    """
    Change one table's enablement, frequency, priority or sync params.
    
    404 unknown id, 400 when no field is given.
    """
    config, changes = await RefreshConfigRegistry(db).update_config(update)
    logger.info(f"Configuration {config.id} ({config.table_name}) updated: {changes}")
    return RefreshConfigUpdateResponse(
        message=f"Configuration updated for {config.table_name}",
        configuration=RefreshConfigView.from_model(config),
        changes=changes,
    )
