"""
Refresh config registry: one durable record per synchronized table.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging
import math

from pydantic import ValidationError
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from models.refresh_config import RefreshConfig
from schemas.refresh import RefreshConfigUpdate, RefreshTarget
from core.exceptions import InvalidConfigError, UnknownTableError

logger = logging.getLogger(__name__)


def refresh_wait_minutes(
    last_refresh_at: Optional[datetime],
    min_interval: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """
    Minutes left before a table may be refreshed again (0 = allowed).
    """
    if last_refresh_at is None:
        return 0
    now = now or datetime.utcnow()
    remaining = (last_refresh_at + min_interval) - now
    if remaining <= timedelta(0):
        return 0
    return max(1, math.ceil(remaining.total_seconds() / 60))


class RefreshConfigRegistry:
    """
    Reads and updates refresh_config rows.
    
    Responsibilities:
    - Look up a table's config (NotFound surfaces as UnknownTableError)
    - List enabled tables by priority (desc), ties by table name (asc)
    - Stamp run start / run success and recompute next_refresh_at
    - Apply operator updates (enablement, frequency, priority, sync params)
    """
    
    def __init__(self, db_session: AsyncSession):
        self.db = db_session
    
    async def get(self, table_name: str) -> RefreshConfig:
        result = await self.db.execute(
            select(RefreshConfig)
            .where(RefreshConfig.table_name == table_name)
            .order_by(RefreshConfig.id)
            .limit(1)
        )
        config = result.scalars().first()
        if config is None:
            raise UnknownTableError(
                "Table configuration not found",
                context={"table_name": table_name}
            )
        return config
    
    async def get_by_id(self, config_id: int) -> RefreshConfig:
        config = await self.db.get(RefreshConfig, config_id, populate_existing=True)
        if config is None:
            raise UnknownTableError(
                "Table configuration not found",
                context={"config_id": config_id}
            )
        return config
    
    async def list_all(self) -> List[RefreshConfig]:
        """Every config, enabled or not, by priority DESC then table_name."""
        result = await self.db.execute(
            select(RefreshConfig)
            .order_by(RefreshConfig.priority.desc(), RefreshConfig.table_name.asc())
        )
        return list(result.scalars().all())
    
    async def get_by_identity(self, table_schema: str, table_name: str) -> Optional[RefreshConfig]:
        result = await self.db.execute(
            select(RefreshConfig).where(
                RefreshConfig.table_schema == table_schema,
                RefreshConfig.table_name == table_name,
            )
        )
        return result.scalars().first()
    
    async def list_enabled(
        self,
        due_only: bool = False,
        now: Optional[datetime] = None
    ) -> List[RefreshConfig]:
        """
        Enabled configs ordered by priority DESC, then table_name ASC.
        
        Args:
            due_only: Only configs whose next_refresh_at is unset or has passed
            now: Reference time for due_only
        """
        stmt = select(RefreshConfig).where(RefreshConfig.is_enabled.is_(True))
        if due_only:
            now = now or datetime.utcnow()
            stmt = stmt.where(or_(
                RefreshConfig.next_refresh_at.is_(None),
                RefreshConfig.next_refresh_at <= now,
            ))
        stmt = stmt.order_by(RefreshConfig.priority.desc(), RefreshConfig.table_name.asc())
        
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
    
    async def mark_run_start(self, table_name: str, now: Optional[datetime] = None) -> RefreshConfig:
        config = await self.get(table_name)
        config.last_attempt_at = now or datetime.utcnow()
        await self.db.commit()
        return config
    
    async def mark_run_success(
        self,
        table_name: str,
        rows_processed: int,
        now: Optional[datetime] = None
    ) -> RefreshConfig:
        """Record a successful run; next_refresh_at = last_refresh_at + frequency."""
        config = await self.get(table_name)
        finished_at = now or datetime.utcnow()
        
        config.last_refresh_at = finished_at
        config.last_rows_processed = rows_processed
        config.next_refresh_at = finished_at + timedelta(hours=config.refresh_frequency_hours)
        await self.db.commit()
        
        logger.info(
            f"Refresh config updated for {table_name}: rows={rows_processed}, "
            f"next_refresh_at={config.next_refresh_at.isoformat()}"
        )
        return config
    
    async def update_config(
        self,
        update: RefreshConfigUpdate,
        now: Optional[datetime] = None
    ) -> Tuple[RefreshConfig, List[str]]:
        """
        Apply an operator update to one config row.
        
        Changing the frequency of a table that has refreshed before moves
        next_refresh_at to last_refresh_at + the new frequency. Disabling a
        table leaves its checkpoint in place; a pending continuation for it
        is abandoned and re-enabling resumes from the stored cursor.
        
        Returns:
            The updated config and the names of the fields that changed
        
        Raises:
            InvalidConfigError: nothing to update
            UnknownTableError: no config with that id
        """
        changes = update.changes()
        if not changes:
            raise InvalidConfigError("No fields to update", context={"config_id": update.id})
        
        config = await self.get_by_id(update.id)
        frequency = changes.get("refresh_frequency_hours")
        if frequency and frequency != config.refresh_frequency_hours and config.last_refresh_at:
            config.next_refresh_at = config.last_refresh_at + timedelta(hours=frequency)
        
        for field, value in changes.items():
            setattr(config, field, value)
        config.updated_at = now or datetime.utcnow()
        await self.db.commit()
        
        logger.info(f"Refresh config {config.id} ({config.table_name}) updated: {sorted(changes)}")
        return config, list(changes)
    
    @staticmethod
    def to_target(config: RefreshConfig) -> RefreshTarget:
        """
        Typed snapshot of a config row for the worker.
        
        Raises:
            InvalidConfigError: custom_sync_params holds values the worker cannot use
        """
        params = config.custom_sync_params if isinstance(config.custom_sync_params, dict) else {}
        try:
            return RefreshTarget(
                config_id=config.id,
                table_schema=config.table_schema,
                table_name=config.table_name,
                function_name=config.function_name,
                is_enabled=config.is_enabled,
                refresh_frequency_hours=config.refresh_frequency_hours,
                priority=config.priority,
                last_refresh_at=config.last_refresh_at,
                next_refresh_at=config.next_refresh_at,
                lookback_days=params.get("lookback_days") or None,
                batch_size=params.get("batch_size") or None,
            )
        except ValidationError as e:
            raise InvalidConfigError(
                "Refresh configuration is invalid",
                context={
                    "table_name": config.table_name,
                    "errors": [
                        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                        for err in e.errors()
                    ],
                },
                original_exception=e
            )
