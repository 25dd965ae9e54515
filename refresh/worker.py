# ============================================================================
# File: refresh/worker.py
# Description: Bounded-time, resumable refresh of one table
# ============================================================================
"""
Table Refresh Worker - fetch, transform, upsert and checkpoint in batches.

One invocation:
- Acquires (or resumes) the table's checkpoint lease
- Processes batches in strictly increasing cursor order
- Completes the checkpoint once the source returns a short batch
- Hands off to a continuation when its time budget is spent
- On failure leaves the cursor where it was, records the failure and re-raises

The lookback window is fixed when the checkpoint is created and stored in
its cursor (``since``), so every continuation filters the source the same
way and offsets keep pointing at the same rows.
"""

import time
from datetime import date, timedelta
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from models.base import WebhookEvent
from refresh.audit import AuditLogger
from refresh.base import WarehouseSource
from refresh.checkpoint import CheckpointStore
from refresh.continuation import ContinuationQueue, RefreshContinuation
from refresh.loaders.upsert_loader import UpsertLoader
from refresh.registry import RefreshConfigRegistry
from refresh.tables import TableSpec, get_table_spec
from refresh.transformers.performance import RowTransformer
from refresh.webhooks import WebhookDeliveryQueue
from schemas.refresh import AuditMetrics, RefreshTarget, WorkerOptions, WorkerResult
from core.exceptions import RefreshError, SyncException

logger = logging.getLogger(__name__)


class TableRefreshWorker:
    """
    Resumable refresh of a single table.

    Responsibilities:
    - Keep the checkpoint cursor in lock-step with what has been upserted
    - Respect the per-invocation time budget
    - Record the outcome in the audit log and refresh config
    - Queue refresh.completed / refresh.failed notifications
    """

    def __init__(
        self,
        db_session: AsyncSession,
        source: WarehouseSource,
        continuations: ContinuationQueue,
        webhooks: Optional[WebhookDeliveryQueue] = None,
        options: Optional[WorkerOptions] = None,
        clock: Optional[Callable[[], float]] = None,
        today: Optional[Callable[[], date]] = None
    ):
        self.db = db_session
        self.source = source
        self.continuations = continuations
        self.webhooks = webhooks
        self.options = options or WorkerOptions()
        self.clock = clock or time.monotonic
        self.today = today or date.today

        self.checkpoints = CheckpointStore(db_session, lease_seconds=self.options.lease_seconds)
        self.audit = AuditLogger(db_session)
        self.registry = RefreshConfigRegistry(db_session)
        self.loader = UpsertLoader(db_session, timeout_seconds=self.options.upsert_timeout_seconds)

    def _initial_cursor(self, target: RefreshTarget) -> Dict[str, Any]:
        cursor: Dict[str, Any] = {"offset": 0}
        if target.lookback_days:
            cursor["since"] = (self.today() - timedelta(days=target.lookback_days)).isoformat()
        return cursor

    async def run(self, target: RefreshTarget, audit_log_id: int) -> WorkerResult:
        """
        Refresh ``target`` until the source is exhausted or time runs out.

        Returns:
            WorkerResult; ``completed`` is False when a continuation was queued

        Raises:
            SyncException: any failure, after it was written to the audit log
        """
        started = self.clock()

        result = WorkerResult()
        job_id = None
        checkpoint = None

        try:
            spec = get_table_spec(target.function_name)
            transformer = RowTransformer(spec)

            checkpoint = await self.checkpoints.acquire_or_resume(
                spec.function_name, target.table_schema, target.table_name,
                audit_log_id=audit_log_id,
                initial_cursor=self._initial_cursor(target)
            )
            since = _window_start(checkpoint.checkpoint_data)
            batch_size = target.batch_size or self.options.batch_size
            result.checkpoint_id = checkpoint.id
            offset = checkpoint.offset
            result.rows_processed = offset
            result.skipped_rows = int(checkpoint.checkpoint_data.get("skipped", 0))

            while True:
                batch = await self.source.fetch_batch(
                    spec, offset=offset, limit=batch_size, since=since
                )
                job_id = batch.job_id or job_id
                fetched = len(batch.rows)

                if fetched:
                    transformed = transformer.transform(batch.rows)
                    await self.loader.load(spec, transformed.records)

                    offset += fetched
                    result.skipped_rows += transformed.skipped
                    cursor = {
                        "offset": offset,
                        "last_start_date": transformed.last_start_date,
                        "skipped": result.skipped_rows,
                    }
                    if since is not None:
                        cursor["since"] = since.isoformat()
                    await self.checkpoints.advance(checkpoint, cursor, offset)
                    result.batches += 1
                    result.rows_processed = offset
                    logger.info(
                        f"{target.table_name}: batch {result.batches} upserted "
                        f"({fetched} rows, cursor offset {offset})",
                        extra=_log_context(target, audit_log_id, checkpoint, rows=fetched, offset=offset)
                    )

                if fetched < batch_size:
                    await self._finish(target, spec, checkpoint, audit_log_id, result, job_id)
                    result.completed = True
                    return result

                if self.clock() - started >= self.options.time_budget_seconds:
                    await self._hand_off(target, spec, checkpoint, audit_log_id, result)
                    return result

        except Exception as e:
            await self.db.rollback()
            error = e if isinstance(e, SyncException) else RefreshError(
                f"Refresh of {target.table_name} failed unexpectedly",
                context={"table_name": target.table_name, "function_name": target.function_name},
                original_exception=e
            )
            error.context.setdefault("table_name", target.table_name)
            if checkpoint is not None:
                error.context.setdefault("checkpoint_id", checkpoint.id)
            logger.error(
                f"Refresh of {target.table_name} failed: {error}",
                extra=_log_context(target, audit_log_id, checkpoint, error_code=error.code)
            )

            await self._record_failure(target, audit_log_id, error, result)
            if error is e:
                raise
            raise error from e

    async def _record_failure(
        self,
        target: RefreshTarget,
        audit_log_id: int,
        error: SyncException,
        result: WorkerResult
    ):
        try:
            await self.audit.fail(audit_log_id, error, rows_processed=result.rows_processed)
            await self._notify(WebhookEvent.REFRESH_FAILED, target, audit_log_id, {
                "rows_processed": result.rows_processed,
                "error": error.message,
                "code": error.code,
                "category": error.category,
            })
        except Exception as record_error:
            await self.db.rollback()
            logger.error(f"Could not record failure of {target.table_name}: {record_error}")

    async def _finish(
        self,
        target: RefreshTarget,
        spec: TableSpec,
        checkpoint,
        audit_log_id: int,
        result: WorkerResult,
        job_id: Optional[str]
    ):
        await self.checkpoints.complete(checkpoint, total_rows=result.rows_processed)

        audit_entry = await self.audit.get(audit_log_id)
        invocations = ((audit_entry.sync_metadata or {}).get("invocations", 0) if audit_entry else 0) + 1
        await self.audit.succeed(audit_log_id, AuditMetrics(
            rows_processed=result.rows_processed,
            rows_inserted=result.rows_processed - result.skipped_rows,
            bigquery_job_id=job_id,
            sync_metadata={
                "function_name": spec.function_name,
                "checkpoint_id": checkpoint.id,
                "invocations": invocations,
                "reclaim_count": checkpoint.reclaim_count,
                "last_batch_count": result.batches,
                "skipped_rows": result.skipped_rows,
            },
        ))
        await self.registry.mark_run_success(target.table_name, result.rows_processed)

        logger.info(
            f"Refresh of {target.table_name} completed: {result.rows_processed} rows "
            f"(checkpoint {checkpoint.id})",
            extra=_log_context(target, audit_log_id, checkpoint, rows=result.rows_processed)
        )
        await self._notify(WebhookEvent.REFRESH_COMPLETED, target, audit_log_id, {
            "rows_processed": result.rows_processed,
            "checkpoint_id": checkpoint.id,
        })

    async def _hand_off(
        self,
        target: RefreshTarget,
        spec: TableSpec,
        checkpoint,
        audit_log_id: int,
        result: WorkerResult
    ):
        audit_entry = await self.audit.get(audit_log_id)
        metadata = dict((audit_entry.sync_metadata or {}) if audit_entry else {})
        metadata["invocations"] = metadata.get("invocations", 0) + 1
        metadata["checkpoint_id"] = checkpoint.id
        await self.audit.record_progress(audit_log_id, result.rows_processed, metadata)

        await self.continuations.enqueue(RefreshContinuation(
            function_name=spec.function_name,
            table_schema=target.table_schema,
            table_name=target.table_name,
            audit_log_id=audit_log_id,
            checkpoint_id=checkpoint.id,
        ))
        logger.info(
            f"Time budget spent for {target.table_name} at offset {result.rows_processed}; "
            f"continuation queued",
            extra=_log_context(target, audit_log_id, checkpoint, offset=result.rows_processed)
        )

    async def _notify(self, event: WebhookEvent, target: RefreshTarget, audit_log_id: int, extra: dict):
        if self.webhooks is None:
            return
        data = {
            "table_schema": target.table_schema,
            "table_name": target.table_name,
            "function_name": target.function_name,
            "audit_log_id": audit_log_id,
        }
        data.update(extra)
        await self.webhooks.enqueue(event.value, data)


def _log_context(target: RefreshTarget, audit_log_id: int, checkpoint, **fields) -> Dict[str, Any]:
    """Fields attached to worker log records for structured output."""
    context = {
        "table_name": target.table_name,
        "function_name": target.function_name,
        "audit_log_id": audit_log_id,
        "checkpoint_id": checkpoint.id if checkpoint is not None else None,
    }
    context.update(fields)
    return context


def _window_start(cursor: Dict[str, Any]) -> Optional[date]:
    """Lower start_date bound recorded in a checkpoint cursor, if any."""
    since = (cursor or {}).get("since")
    return date.fromisoformat(since) if since else None
