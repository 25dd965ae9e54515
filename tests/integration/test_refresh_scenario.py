"""
End-to-end refresh of asin_performance_data across two invocations
"""

import json

import pytest
from sqlalchemy import select, func

from core.config import Settings
from models.base import CheckpointStatus, RefreshStatus
from models.checkpoint import RefreshCheckpoint
from models.performance import AsinPerformanceData
from models.webhook import WebhookConfig
from refresh.audit import AuditLogger
from refresh.runtime import RefreshRuntime
from tests.fakes import make_asin_rows


@pytest.mark.asyncio
async def test_two_invocation_refresh(database, warehouse, http_client, webhook_requests, db_session, seed_config):
    """
    5 source rows, batch size 3, time budget spent after the first batch:
    the first invocation hands off, the continuation finishes the table.
    """
    settings = Settings(
        SCHEDULER_ENABLED=False,
        REFRESH_BATCH_SIZE=3,
        FUNCTION_TIMEOUT_SECONDS=30,
        TIME_BUDGET_SAFETY_MARGIN_SECONDS=30,
    )
    runtime = RefreshRuntime(settings, database, warehouse, http_client)
    await seed_config()
    db_session.add(WebhookConfig(name="ops", url="https://hooks.test/refresh", secret="s3cret"))
    await db_session.commit()
    rows = make_asin_rows(5)
    warehouse.set_rows("refresh-asin-performance", rows)
    
    # First invocation: one batch, then hand-off
    outcome = await runtime.orchestrator(db_session).refresh_table("asin_performance_data")
    
    assert outcome.success
    assert not outcome.completed
    assert outcome.rows_processed == 3
    
    checkpoint = (await db_session.execute(select(RefreshCheckpoint))).scalars().one()
    assert checkpoint.status == CheckpointStatus.ACTIVE
    assert checkpoint.checkpoint_data["offset"] == 3
    assert checkpoint.checkpoint_data["last_start_date"] == rows[2]["start_date"]
    assert runtime.continuations.pending() == 1
    
    # Second invocation: short batch completes the table
    await runtime.continuations.run_pending()
    
    await db_session.refresh(checkpoint)
    assert checkpoint.status == CheckpointStatus.COMPLETED
    assert checkpoint.total_rows == 5
    
    entry = await AuditLogger(db_session).get(outcome.audit_log_id)
    assert entry.status == RefreshStatus.SUCCESS
    assert entry.rows_processed == 5
    assert entry.sync_metadata["invocations"] == 2
    
    count = await db_session.execute(select(func.count()).select_from(AsinPerformanceData))
    assert count.scalar() == 5
    
    # The completion notification goes out on the next drain
    stats = await runtime.drain_webhooks()
    assert stats["succeeded"] == 1
    body = json.loads(webhook_requests[0].content)
    assert body["event"] == "refresh.completed"
    assert body["data"]["rows_processed"] == 5
    assert body["data"]["audit_log_id"] == outcome.audit_log_id
