"""
Process-wide runtime: the explicitly created handles every component
receives (database, HTTP client, warehouse source, continuation queue),
plus the continuation handlers and maintenance jobs built on them.
"""

from datetime import timedelta
from typing import Dict, List, Optional
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.database import Database
from core.exceptions import CheckpointError, InvalidConfigError, TableDisabledError
from models.base import CheckpointStatus
from refresh.audit import AuditLogger
from refresh.base import WarehouseSource
from refresh.checkpoint import CheckpointStore
from refresh.continuation import (
    ContinuationQueue,
    RefreshContinuation,
    WebhookDrainContinuation,
)
from refresh.orchestrator import RefreshOrchestrator
from refresh.registry import RefreshConfigRegistry
from refresh.sources.bigquery import BigQueryRestSource
from refresh.webhooks import WebhookDeliveryQueue
from refresh.worker import TableRefreshWorker
from schemas.refresh import ReclaimedCheckpoint, RunSummary, WorkerOptions
from schemas.webhook import RetryConfig

logger = logging.getLogger(__name__)


class RefreshRuntime:
    """
    Owns long-lived handles and builds per-session components.
    
    Created once at process start (API lifespan or script) and passed by
    reference; nothing in the refresh package reaches for a global client.
    """
    
    def __init__(
        self,
        settings: Settings,
        database: Database,
        source: WarehouseSource,
        http_client: httpx.AsyncClient,
        continuations: Optional[ContinuationQueue] = None
    ):
        self.settings = settings
        self.database = database
        self.source = source
        self.http_client = http_client
        self.continuations = continuations or ContinuationQueue()
        self.worker_options = WorkerOptions.from_settings(settings)
        self.default_retry = RetryConfig(
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
            backoff_seconds=settings.WEBHOOK_BACKOFF_SECONDS,
        )
        
        self.continuations.register(RefreshContinuation, self.handle_refresh_continuation)
        self.continuations.register(WebhookDrainContinuation, self.handle_webhook_drain)
    
    @classmethod
    def create(cls, settings: Settings) -> "RefreshRuntime":
        database = Database.from_settings(settings)
        http_client = httpx.AsyncClient()
        source = BigQueryRestSource.from_settings(settings, http_client)
        return cls(settings, database, source, http_client)
    
    async def close(self):
        await self.continuations.stop()
        await self.source.close()
        await self.http_client.aclose()
        await self.database.dispose()
    
    # ------------------------------------------------------------------
    # Component factories (one session each)
    # ------------------------------------------------------------------
    
    def webhook_queue(self, session: AsyncSession) -> WebhookDeliveryQueue:
        return WebhookDeliveryQueue(
            session,
            self.http_client,
            continuations=self.continuations,
            default_retry=self.default_retry,
            timeout_seconds=self.settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    
    def worker(self, session: AsyncSession) -> TableRefreshWorker:
        return TableRefreshWorker(
            session,
            self.source,
            self.continuations,
            webhooks=self.webhook_queue(session),
            options=self.worker_options,
        )
    
    def orchestrator(self, session: AsyncSession) -> RefreshOrchestrator:
        return RefreshOrchestrator(
            session,
            self.worker(session),
            min_refresh_interval=timedelta(minutes=self.settings.MIN_REFRESH_INTERVAL_MINUTES),
        )
    
    # ------------------------------------------------------------------
    # Continuation handlers
    # ------------------------------------------------------------------
    
    async def handle_refresh_continuation(self, item: RefreshContinuation):
        async with self.database.session() as session:
            checkpoints = CheckpointStore(session, lease_seconds=self.worker_options.lease_seconds)
            checkpoint = await checkpoints.get(item.checkpoint_id)
            if (
                checkpoint is None
                or checkpoint.status != CheckpointStatus.ACTIVE
                or checkpoint.audit_log_id != item.audit_log_id
            ):
                logger.info(
                    f"Dropping continuation for {item.table_name}: checkpoint "
                    f"{item.checkpoint_id} is no longer held by audit {item.audit_log_id}"
                )
                return
            
            registry = RefreshConfigRegistry(session)
            config = await registry.get_by_identity(item.table_schema, item.table_name)
            if config is None or not config.is_enabled:
                logger.warning(f"Refresh of {item.table_name} abandoned: table disabled")
                await AuditLogger(session).fail(
                    item.audit_log_id,
                    TableDisabledError(
                        "Refresh abandoned because the table was disabled",
                        context={"table_name": item.table_name, "checkpoint_id": item.checkpoint_id}
                    )
                )
                return
            
            try:
                target = registry.to_target(config)
            except InvalidConfigError as e:
                logger.warning(f"Refresh of {item.table_name} abandoned: {e.message}")
                await AuditLogger(session).fail(item.audit_log_id, e)
                return
            await self.worker(session).run(target, item.audit_log_id)
    
    async def handle_webhook_drain(self, item: WebhookDrainContinuation):
        async with self.database.session() as session:
            await self.webhook_queue(session).process_pending(item.max_batch)
    
    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------
    
    async def run_due_refreshes(self) -> RunSummary:
        async with self.database.session() as session:
            return await self.orchestrator(session).run_all(due_only=True)
    
    async def drain_webhooks(self) -> Dict[str, int]:
        async with self.database.session() as session:
            return await self.webhook_queue(session).process_pending(self.settings.WEBHOOK_BATCH_SIZE)
    
    async def reclaim_checkpoints(self) -> List[ReclaimedCheckpoint]:
        """Reclaim expired leases and close the audit entries of their dead holders."""
        async with self.database.session() as session:
            store = CheckpointStore(session, lease_seconds=self.worker_options.lease_seconds)
            reclaimed = await store.reclaim_expired()
            audit = AuditLogger(session)
            for item in reclaimed:
                if item.previous_audit_log_id is not None:
                    await audit.fail(
                        item.previous_audit_log_id,
                        CheckpointError(
                            "Checkpoint lease expired before the refresh finished",
                            context={
                                "checkpoint_id": item.checkpoint_id,
                                "table_name": item.table_name,
                                "offset": item.offset,
                                "operation": "reclaim"
                            }
                        )
                    )
            return reclaimed
