"""
Audit logger: one row per refresh attempt, and the read queries that
health and metrics reporting are built on.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from models.audit_log import RefreshAuditLog
from models.base import RefreshStatus
from schemas.refresh import AuditMetrics, RefreshTarget
from core.exceptions import SyncException

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Bookkeeping for refresh attempts.
    
    Responsibilities:
    - start → running entry; succeed / fail → completion fields
    - Completion fields are written once; later writes to a completed
      entry are ignored
    - Read side: completed entries in a window, recent errors,
      rolling success rate and average duration per table
    """
    
    def __init__(
        self,
        db_session: AsyncSession,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_session
        self.clock = clock or datetime.utcnow
    
    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    
    async def start(self, target: RefreshTarget) -> int:
        """Create a running entry and return its id."""
        now = self.clock()
        entry = RefreshAuditLog(
            refresh_config_id=target.config_id,
            table_schema=target.table_schema,
            table_name=target.table_name,
            status=RefreshStatus.RUNNING,
            refresh_started_at=now,
            created_at=now,
            sync_metadata={"function_name": target.function_name, "invocations": 0},
        )
        self.db.add(entry)
        await self.db.commit()
        
        logger.info(f"Audit entry {entry.id} started for {target.table_schema}.{target.table_name}")
        return entry.id
    
    async def get(self, audit_log_id: int) -> Optional[RefreshAuditLog]:
        return await self.db.get(RefreshAuditLog, audit_log_id, populate_existing=True)
    
    async def record_progress(
        self,
        audit_log_id: int,
        rows_processed: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Update the running counters of an entry that has not completed yet."""
        values: Dict[str, Any] = {"rows_processed": rows_processed}
        if metadata is not None:
            values["sync_metadata"] = metadata
        return await self._update_open_entry(audit_log_id, **values)
    
    async def succeed(self, audit_log_id: int, metrics: AuditMetrics) -> bool:
        entry = await self.get(audit_log_id)
        if entry is None:
            logger.warning(f"Audit entry {audit_log_id} not found; success not recorded")
            return False
        
        now = self.clock()
        execution_ms = metrics.execution_time_ms
        if execution_ms is None:
            execution_ms = int((now - entry.refresh_started_at).total_seconds() * 1000)
        
        metadata = dict(entry.sync_metadata or {})
        metadata.update(metrics.sync_metadata)
        
        written = await self._update_open_entry(
            audit_log_id,
            status=RefreshStatus.SUCCESS,
            refresh_completed_at=now,
            rows_processed=metrics.rows_processed,
            rows_inserted=metrics.rows_inserted,
            rows_updated=metrics.rows_updated,
            execution_time_ms=execution_ms,
            bigquery_job_id=metrics.bigquery_job_id,
            sync_metadata=metadata,
        )
        if written:
            logger.info(
                f"Audit entry {audit_log_id} succeeded: {metrics.rows_processed} rows "
                f"in {execution_ms}ms"
            )
        return written
    
    async def fail(
        self,
        audit_log_id: int,
        error: Exception,
        rows_processed: Optional[int] = None
    ) -> bool:
        entry = await self.get(audit_log_id)
        if entry is None:
            logger.warning(f"Audit entry {audit_log_id} not found; failure not recorded")
            return False
        
        now = self.clock()
        if isinstance(error, SyncException):
            message = error.message
            details = error.to_dict()
        else:
            message = str(error) or type(error).__name__
            details = {
                "error_type": type(error).__name__,
                "code": "unexpected_error",
                "category": "internal",
                "message": message,
            }
        
        values: Dict[str, Any] = {
            "status": RefreshStatus.FAILED,
            "refresh_completed_at": now,
            "execution_time_ms": int((now - entry.refresh_started_at).total_seconds() * 1000),
            "error_message": message,
            "error_details": _json_safe(details),
        }
        if rows_processed is not None:
            values["rows_processed"] = rows_processed
        
        written = await self._update_open_entry(audit_log_id, **values)
        if written:
            logger.error(f"Audit entry {audit_log_id} failed: {message}")
        return written
    
    async def fail_superseded(
        self,
        table_schema: str,
        table_name: str,
        keep_audit_log_id: int
    ) -> int:
        """
        Close other running entries for a table once a new attempt owns it.
        
        Their worker has crashed or been overtaken, so nobody else will
        complete them.
        """
        now = self.clock()
        result = await self.db.execute(
            update(RefreshAuditLog)
            .where(
                RefreshAuditLog.table_schema == table_schema,
                RefreshAuditLog.table_name == table_name,
                RefreshAuditLog.id != keep_audit_log_id,
                RefreshAuditLog.status == RefreshStatus.RUNNING,
                RefreshAuditLog.refresh_completed_at.is_(None),
            )
            .values(
                status=RefreshStatus.FAILED,
                refresh_completed_at=now,
                error_message="Superseded by a newer refresh attempt",
                error_details={"code": "superseded", "category": "checkpoint"},
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        
        if result.rowcount:
            logger.warning(
                f"Closed {result.rowcount} abandoned audit entr(ies) for {table_name}"
            )
        return result.rowcount
    
    async def _update_open_entry(self, audit_log_id: int, **values) -> bool:
        result = await self.db.execute(
            update(RefreshAuditLog)
            .where(
                RefreshAuditLog.id == audit_log_id,
                RefreshAuditLog.refresh_completed_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        
        if result.rowcount != 1:
            logger.warning(f"Audit entry {audit_log_id} already completed; update ignored")
            return False
        return True
    
    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    
    async def completed_since(
        self,
        since: datetime,
        table_name: Optional[str] = None
    ) -> List[RefreshAuditLog]:
        stmt = select(RefreshAuditLog).where(
            RefreshAuditLog.refresh_started_at >= since,
            RefreshAuditLog.refresh_completed_at.is_not(None),
        )
        if table_name:
            stmt = stmt.where(RefreshAuditLog.table_name == table_name)
        stmt = stmt.order_by(RefreshAuditLog.refresh_started_at.asc(), RefreshAuditLog.id.asc())
        
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
    
    async def recent_errors(self, table_name: str, limit: int = 3) -> List[RefreshAuditLog]:
        result = await self.db.execute(
            select(RefreshAuditLog)
            .where(
                RefreshAuditLog.table_name == table_name,
                RefreshAuditLog.status == RefreshStatus.FAILED,
            )
            .order_by(RefreshAuditLog.refresh_started_at.desc(), RefreshAuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
    
    async def success_rate(self, table_name: str, since: datetime) -> Optional[float]:
        """Percentage of completed attempts that succeeded, None without data."""
        result = await self.db.execute(
            select(RefreshAuditLog.status, func.count())
            .where(
                RefreshAuditLog.table_name == table_name,
                RefreshAuditLog.refresh_started_at >= since,
                RefreshAuditLog.refresh_completed_at.is_not(None),
            )
            .group_by(RefreshAuditLog.status)
        )
        counts = {status: count for status, count in result.all()}
        total = sum(counts.values())
        if not total:
            return None
        return round(counts.get(RefreshStatus.SUCCESS, 0) / total * 100, 2)
    
    async def average_duration_ms(self, table_name: str, since: datetime) -> Optional[float]:
        result = await self.db.execute(
            select(func.avg(RefreshAuditLog.execution_time_ms)).where(
                RefreshAuditLog.table_name == table_name,
                RefreshAuditLog.status == RefreshStatus.SUCCESS,
                RefreshAuditLog.refresh_started_at >= since,
            )
        )
        value = result.scalar()
        return float(value) if value is not None else None
    
    async def latest_for_table(self, table_name: str) -> Optional[RefreshAuditLog]:
        result = await self.db.execute(
            select(RefreshAuditLog)
            .where(RefreshAuditLog.table_name == table_name)
            .order_by(RefreshAuditLog.refresh_started_at.desc(), RefreshAuditLog.id.desc())
            .limit(1)
        )
        return result.scalars().first()


def _json_safe(value):
    """Context dicts may hold dates and other non-JSON values"""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
