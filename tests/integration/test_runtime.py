"""
Tests for continuation handlers and maintenance jobs
"""

from datetime import datetime, timedelta

import pytest

from models.base import CheckpointStatus, RefreshStatus
from refresh.audit import AuditLogger
from refresh.checkpoint import CheckpointStore
from refresh.continuation import RefreshContinuation
from refresh.registry import RefreshConfigRegistry
from tests.fakes import make_asin_rows

FUNCTION = "refresh-asin-performance"


async def open_run(session):
    registry = RefreshConfigRegistry(session)
    target = registry.to_target(await registry.get("asin_performance_data"))
    audit_id = await AuditLogger(session).start(target)
    return target, audit_id


def continuation_for(checkpoint, audit_id) -> RefreshContinuation:
    return RefreshContinuation(
        function_name=FUNCTION,
        table_schema="sqp",
        table_name="asin_performance_data",
        audit_log_id=audit_id,
        checkpoint_id=checkpoint.id,
    )


class TestRefreshContinuationHandler:
    """Continuations resume only the lease they were issued for"""
    
    @pytest.mark.asyncio
    async def test_resumes_owned_checkpoint(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(5))
        _, audit_id = await open_run(db_session)
        store = CheckpointStore(db_session)
        checkpoint = await store.acquire_or_resume(FUNCTION, "sqp", "asin_performance_data", audit_log_id=audit_id)
        await store.advance(checkpoint, {"offset": 3}, 3)
        
        await runtime.handle_refresh_continuation(continuation_for(checkpoint, audit_id))
        
        assert [c["offset"] for c in warehouse.calls] == [3]
        assert (await AuditLogger(db_session).get(audit_id)).status == RefreshStatus.SUCCESS
    
    @pytest.mark.asyncio
    async def test_stale_continuation_is_dropped(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        _, first_audit = await open_run(db_session)
        _, second_audit = await open_run(db_session)
        store = CheckpointStore(db_session)
        checkpoint = await store.acquire_or_resume(FUNCTION, "sqp", "asin_performance_data", audit_log_id=first_audit)
        await store.acquire_or_resume(FUNCTION, "sqp", "asin_performance_data", audit_log_id=second_audit)
        
        await runtime.handle_refresh_continuation(continuation_for(checkpoint, first_audit))
        
        assert warehouse.calls == []
    
    @pytest.mark.asyncio
    async def test_disabled_table_abandons_run(self, runtime, warehouse, db_session, seed_config):
        config = await seed_config()
        _, audit_id = await open_run(db_session)
        checkpoint = await CheckpointStore(db_session).acquire_or_resume(
            FUNCTION, "sqp", "asin_performance_data", audit_log_id=audit_id
        )
        config.is_enabled = False
        await db_session.commit()
        
        await runtime.handle_refresh_continuation(continuation_for(checkpoint, audit_id))
        
        entry = await AuditLogger(db_session).get(audit_id)
        assert warehouse.calls == []
        assert entry.status == RefreshStatus.FAILED
        assert entry.error_details["code"] == "table_disabled"


class TestReclaimJob:
    """Expired leases are reclaimed and their dead runs closed"""
    
    @pytest.mark.asyncio
    async def test_reclaim_fails_previous_owner(self, runtime, db_session, seed_config):
        await seed_config()
        _, audit_id = await open_run(db_session)
        two_hours_ago = datetime.utcnow() - timedelta(hours=2)
        store = CheckpointStore(db_session, lease_seconds=3600, clock=lambda: two_hours_ago)
        checkpoint = await store.acquire_or_resume(FUNCTION, "sqp", "asin_performance_data", audit_log_id=audit_id)
        await store.advance(checkpoint, {"offset": 6}, 6)
        
        reclaimed = await runtime.reclaim_checkpoints()
        
        assert [r.checkpoint_id for r in reclaimed] == [checkpoint.id]
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.status == RefreshStatus.FAILED
        assert entry.error_details["code"] == "checkpoint_error"
        
        refreshed = await CheckpointStore(db_session).get(checkpoint.id)
        assert refreshed.status == CheckpointStatus.ACTIVE
        assert refreshed.offset == 6
        assert refreshed.audit_log_id is None
    
    @pytest.mark.asyncio
    async def test_nothing_to_reclaim(self, runtime):
        assert await runtime.reclaim_checkpoints() == []
