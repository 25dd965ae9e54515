# ============================================================================
# File: refresh/orchestrator.py
# Description: Runs table refreshes in priority order with throttling
# ============================================================================
"""
Refresh Orchestrator - decides what may run and delegates to the worker.

Throttling uses one global minimum interval between refreshes of the same
table (MIN_REFRESH_INTERVAL_MINUTES). ``refresh_frequency_hours`` only
drives scheduling: it sets next_refresh_at, which the scheduler's
due-only runs select on.

A table whose checkpoint lease is held, unexpired, by an attempt that
has not completed is in progress: new starts are rejected (409) and the
running attempt is left alone. Only attempts with no live lease behind
them are closed as superseded.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from refresh.audit import AuditLogger
from refresh.checkpoint import CheckpointStore
from refresh.registry import RefreshConfigRegistry, refresh_wait_minutes
from refresh.worker import TableRefreshWorker
from schemas.refresh import RefreshTarget, RunSummary, TableRunOutcome
from core.exceptions import (
    InvalidConfigError,
    RefreshInProgressError,
    RefreshThrottledError,
    SyncException,
    TableDisabledError,
)

logger = logging.getLogger(__name__)


class RefreshOrchestrator:
    """
    Production refresh orchestrator.

    Responsibilities:
    - Validate a single-table trigger (unknown → 404, disabled → 400,
      throttled → 429, in progress → 409) before any work starts
    - Open the audit entry and stamp the run start
    - Run every enabled table by priority, isolating failures per table
    """

    def __init__(
        self,
        db_session: AsyncSession,
        worker: TableRefreshWorker,
        min_refresh_interval: timedelta = timedelta(hours=1),
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_session
        self.worker = worker
        self.min_refresh_interval = min_refresh_interval
        self.clock = clock or datetime.utcnow
        self.registry = RefreshConfigRegistry(db_session)
        self.audit = AuditLogger(db_session, clock=self.clock)
        self.checkpoints = CheckpointStore(db_session, clock=self.clock)

    def check_throttle(self, target: RefreshTarget):
        wait = refresh_wait_minutes(target.last_refresh_at, self.min_refresh_interval, self.clock())
        if wait:
            raise RefreshThrottledError(
                f"Table was refreshed recently. Wait {wait} minutes or use force=true",
                context={
                    "table_name": target.table_name,
                    "last_refresh_at": target.last_refresh_at.isoformat(),
                },
                wait_minutes=wait
            )

    async def check_not_running(self, target: RefreshTarget):
        """
        Raise if another attempt is still working on the table.
        
        An expired lease, an unowned lease or a lease whose owner already
        completed does not count; the next worker takes it over.
        """
        checkpoint = await self.checkpoints.find_active(
            target.function_name, target.table_schema, target.table_name
        )
        if checkpoint is None or checkpoint.audit_log_id is None:
            return
        if checkpoint.expires_at <= self.clock():
            return
        
        owner = await self.audit.get(checkpoint.audit_log_id)
        if owner is None or owner.refresh_completed_at is not None:
            return
        
        raise RefreshInProgressError(
            "A refresh of this table is already in progress",
            context={
                "table_name": target.table_name,
                "audit_log_id": owner.id,
                "checkpoint_id": checkpoint.id,
                "offset": checkpoint.offset,
                "lease_expires_at": checkpoint.expires_at.isoformat(),
            }
        )
    
    async def refresh_table(self, table_name: str, force: bool = False) -> TableRunOutcome:
        """
        Refresh one table.

        Raises:
            UnknownTableError, TableDisabledError, RefreshThrottledError,
            InvalidConfigError, RefreshInProgressError:
                before any audit entry is written
            SyncException: worker failures (already recorded in the audit log)
        """
        config = await self.registry.get(table_name)
        target = self.registry.to_target(config)

        if not target.is_enabled:
            raise TableDisabledError(
                "Table refresh is disabled",
                context={"table_name": table_name}
            )
        if not force:
            self.check_throttle(target)
        await self.check_not_running(target)

        return await self._run_target(target)

    async def _run_target(self, target: RefreshTarget) -> TableRunOutcome:
        audit_log_id = await self.audit.start(target)
        await self.audit.fail_superseded(target.table_schema, target.table_name, audit_log_id)
        await self.registry.mark_run_start(target.table_name, now=self.clock())

        logger.info(f"Refreshing {target.table_schema}.{target.table_name} (audit {audit_log_id})")
        result = await self.worker.run(target, audit_log_id)

        return TableRunOutcome(
            table=target.table_name,
            success=True,
            rows_processed=result.rows_processed,
            completed=result.completed,
            audit_log_id=audit_log_id,
            message=(
                "Refresh completed" if result.completed
                else "Refresh in progress; continuation queued"
            ),
        )

    async def run_all(self, force: bool = False, due_only: bool = False) -> RunSummary:
        """
        Refresh every enabled table in priority order.

        Args:
            force: Ignore the minimum refresh interval
            due_only: Only tables whose next_refresh_at has passed (scheduler runs)
        """
        configs = await self.registry.list_enabled(due_only=due_only, now=self.clock())
        planned = []
        for config in configs:
            try:
                planned.append((config.table_name, self.registry.to_target(config), None))
            except InvalidConfigError as e:
                logger.warning(f"Skipping {config.table_name}: {e}")
                planned.append((config.table_name, None, e))
        summary = RunSummary()

        logger.info(f"Orchestrator run: {len(planned)} table(s), force={force}, due_only={due_only}")

        for table_name, target, config_error in planned:
            try:
                if config_error is not None:
                    raise config_error
                if not force:
                    self.check_throttle(target)
                await self.check_not_running(target)
                outcome = await self._run_target(target)
            except (RefreshThrottledError, RefreshInProgressError) as e:
                logger.info(f"Skipping {table_name}: {e.message}")
                outcome = TableRunOutcome(
                    table=table_name,
                    success=False,
                    status_code=e.http_status,
                    error=e.message,
                    code=e.code,
                )
            except SyncException as e:
                await self.db.rollback()
                outcome = TableRunOutcome(
                    table=table_name,
                    success=False,
                    status_code=e.http_status,
                    error=e.message,
                    code=e.code,
                )
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Unexpected failure refreshing {table_name}: {e}")
                outcome = TableRunOutcome(
                    table=table_name,
                    success=False,
                    status_code=500,
                    error=str(e),
                    code="unexpected_error",
                )
            summary.results.append(outcome)

        logger.info(
            f"Orchestrator run finished: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
        return summary
