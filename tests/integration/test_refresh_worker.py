"""
Tests for the table refresh worker: batching, failure handling and resumption
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import select, func

from core.config import Settings
from core.exceptions import RefreshError, SourceQueryError, SourceTransientError
from models.audit_log import RefreshAuditLog
from models.base import CheckpointStatus, RefreshStatus
from models.checkpoint import RefreshCheckpoint
from models.performance import AsinPerformanceData
from refresh.audit import AuditLogger
from refresh.registry import RefreshConfigRegistry
from refresh.runtime import RefreshRuntime
from refresh.worker import TableRefreshWorker
from tests.fakes import make_asin_rows

FUNCTION = "refresh-asin-performance"


@pytest.fixture
def zero_budget_runtime(database, warehouse, http_client):
    """Runtime whose workers hand off after every full batch"""
    settings = Settings(
        SCHEDULER_ENABLED=False,
        REFRESH_BATCH_SIZE=3,
        FUNCTION_TIMEOUT_SECONDS=30,
        TIME_BUDGET_SAFETY_MARGIN_SECONDS=30,
    )
    return RefreshRuntime(settings, database, warehouse, http_client)


async def start_run(session, table_name="asin_performance_data"):
    registry = RefreshConfigRegistry(session)
    target = registry.to_target(await registry.get(table_name))
    audit_id = await AuditLogger(session).start(target)
    return target, audit_id


async def stored_asins(session):
    result = await session.execute(select(AsinPerformanceData.asin).order_by(AsinPerformanceData.asin))
    return list(result.scalars().all())


class TestSingleInvocation:
    """Runs that finish within one time budget"""
    
    @pytest.mark.asyncio
    async def test_full_refresh(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(5))
        target, audit_id = await start_run(db_session)
        
        result = await runtime.worker(db_session).run(target, audit_id)
        
        assert result.completed
        assert result.rows_processed == 5
        assert result.batches == 2
        assert [c["offset"] for c in warehouse.calls] == [0, 3]
        assert len(await stored_asins(db_session)) == 5
        
        checkpoint = await db_session.get(RefreshCheckpoint, result.checkpoint_id)
        assert checkpoint.status == CheckpointStatus.COMPLETED
        assert checkpoint.total_rows == 5
        
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.status == RefreshStatus.SUCCESS
        assert entry.rows_processed == 5
        assert entry.bigquery_job_id == "job-2"
        assert entry.sync_metadata["invocations"] == 1
        
        config = await RefreshConfigRegistry(db_session).get("asin_performance_data")
        await db_session.refresh(config)
        assert config.last_rows_processed == 5
        assert config.next_refresh_at == config.last_refresh_at + timedelta(hours=24)
    
    @pytest.mark.asyncio
    async def test_empty_source_completes_with_zero_rows(self, runtime, db_session, seed_config):
        await seed_config()
        target, audit_id = await start_run(db_session)
        
        result = await runtime.worker(db_session).run(target, audit_id)
        
        assert result.completed
        assert result.rows_processed == 0
        assert (await AuditLogger(db_session).get(audit_id)).status == RefreshStatus.SUCCESS
    
    @pytest.mark.asyncio
    async def test_exact_multiple_of_batch_size_ends_on_empty_batch(
        self, runtime, warehouse, db_session, seed_config
    ):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(6))
        target, audit_id = await start_run(db_session)
        
        result = await runtime.worker(db_session).run(target, audit_id)
        
        assert result.completed
        assert result.rows_processed == 6
        assert [c["offset"] for c in warehouse.calls] == [0, 3, 6]
    
    @pytest.mark.asyncio
    async def test_skipped_rows_still_advance_the_cursor(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        rows = make_asin_rows(4)
        rows[1]["asin"] = None
        warehouse.set_rows(FUNCTION, rows)
        target, audit_id = await start_run(db_session)
        
        result = await runtime.worker(db_session).run(target, audit_id)
        
        assert result.rows_processed == 4
        assert result.skipped_rows == 1
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.rows_inserted == 3
        assert len(await stored_asins(db_session)) == 3
    
    @pytest.mark.asyncio
    async def test_lookback_window_is_passed_to_source(self, runtime, warehouse, db_session, seed_config):
        await seed_config(custom_sync_params={"lookback_days": 30})
        target, audit_id = await start_run(db_session)
        
        await runtime.worker(db_session).run(target, audit_id)
        
        assert warehouse.calls[0]["since"] == date.today() - timedelta(days=30)
    
    @pytest.mark.asyncio
    async def test_batch_size_from_sync_params(self, runtime, warehouse, db_session, seed_config):
        await seed_config(custom_sync_params={"batch_size": 2})
        warehouse.set_rows(FUNCTION, make_asin_rows(5))
        target, audit_id = await start_run(db_session)
        
        result = await runtime.worker(db_session).run(target, audit_id)
        
        assert result.completed
        assert [c["offset"] for c in warehouse.calls] == [0, 2, 4]
        assert {c["limit"] for c in warehouse.calls} == {2}


class TestFailures:
    """A failed batch leaves the cursor where it was"""
    
    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_reraised(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(7))
        warehouse.fail_on_calls = {2: SourceTransientError("Warehouse returned 503")}
        target, audit_id = await start_run(db_session)
        
        with pytest.raises(SourceTransientError):
            await runtime.worker(db_session).run(target, audit_id)
        
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.status == RefreshStatus.FAILED
        assert entry.rows_processed == 3
        assert entry.error_details["code"] == "source_transient"
        
        checkpoint = (await db_session.execute(select(RefreshCheckpoint))).scalars().one()
        assert checkpoint.status == CheckpointStatus.ACTIVE
        assert checkpoint.offset == 3
    
    @pytest.mark.asyncio
    async def test_retry_resumes_from_last_good_offset(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(7))
        warehouse.fail_on_calls = {2: SourceQueryError("Warehouse rejected the request (400)")}
        target, first_audit = await start_run(db_session)
        with pytest.raises(SourceQueryError):
            await runtime.worker(db_session).run(target, first_audit)
        
        target, second_audit = await start_run(db_session)
        result = await runtime.worker(db_session).run(target, second_audit)
        
        assert result.completed
        assert result.rows_processed == 7
        assert [c["offset"] for c in warehouse.calls] == [0, 3, 3, 6]
        assert len(await stored_asins(db_session)) == 7
    
    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self, runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.fail_on_calls = {1: KeyError("jobReference")}
        target, audit_id = await start_run(db_session)
        
        with pytest.raises(RefreshError) as exc_info:
            await runtime.worker(db_session).run(target, audit_id)
        
        assert isinstance(exc_info.value.original_exception, KeyError)
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.error_details["code"] == "refresh_failed"


class TestContinuation:
    """Runs spread over several invocations"""
    
    @pytest.mark.asyncio
    async def test_spent_budget_hands_off(self, zero_budget_runtime, warehouse, db_session, seed_config):
        await seed_config()
        warehouse.set_rows(FUNCTION, make_asin_rows(7))
        target, audit_id = await start_run(db_session)
        
        result = await zero_budget_runtime.worker(db_session).run(target, audit_id)
        
        assert not result.completed
        assert result.rows_processed == 3
        assert zero_budget_runtime.continuations.pending() == 1
        entry = await AuditLogger(db_session).get(audit_id)
        assert entry.status == RefreshStatus.RUNNING
        assert entry.rows_processed == 3
    
    @pytest.mark.asyncio
    async def test_resumed_run_matches_single_run(
        self, zero_budget_runtime, warehouse, db_session, seed_config
    ):
        await seed_config()
        rows = make_asin_rows(7)
        warehouse.set_rows(FUNCTION, rows)
        target, audit_id = await start_run(db_session)
        
        await zero_budget_runtime.worker(db_session).run(target, audit_id)
        processed = await zero_budget_runtime.continuations.run_pending()
        
        assert processed == 2
        assert zero_budget_runtime.continuations.failed == 0
        assert [c["offset"] for c in warehouse.calls] == [0, 3, 6]
        assert await stored_asins(db_session) == sorted(r["asin"] for r in rows)
        
        entries = (await db_session.execute(
            select(RefreshAuditLog).execution_options(populate_existing=True)
        )).scalars().all()
        assert len(entries) == 1
        assert entries[0].status == RefreshStatus.SUCCESS
        assert entries[0].rows_processed == 7
        assert entries[0].sync_metadata["invocations"] == 3
        
        active = await db_session.execute(
            select(func.count()).select_from(RefreshCheckpoint).where(
                RefreshCheckpoint.status == CheckpointStatus.ACTIVE
            )
        )
        assert active.scalar() == 0
    
    @pytest.mark.asyncio
    async def test_lookback_window_is_kept_across_midnight(
        self, zero_budget_runtime, warehouse, db_session, seed_config
    ):
        await seed_config(custom_sync_params={"lookback_days": 3})
        rows = []
        for day, asins in ((7, ("A70", "A71")), (8, ("A80", "A81")), (9, ("A90", "A91"))):
            for asin in asins:
                rows.append({
                    "start_date": f"2024-01-0{day}",
                    "end_date": "2024-01-13",
                    "asin": asin,
                    "product_name": f"Product {asin}",
                    "brand": "Acme",
                })
        warehouse.set_rows(FUNCTION, rows)
        target, audit_id = await start_run(db_session)
        
        def worker_on(day):
            return TableRefreshWorker(
                db_session,
                warehouse,
                zero_budget_runtime.continuations,
                options=zero_budget_runtime.worker_options,
                today=lambda: date(2024, 1, day),
            )
        
        first = await worker_on(10).run(target, audit_id)
        assert not first.completed
        
        # continuations picked up after the date has rolled over
        await worker_on(11).run(target, audit_id)
        result = await worker_on(11).run(target, audit_id)
        
        assert result.completed
        assert result.rows_processed == 6
        assert {c["since"] for c in warehouse.calls} == {date(2024, 1, 7)}
        assert await stored_asins(db_session) == ["A70", "A71", "A80", "A81", "A90", "A91"]
        
        checkpoint = await db_session.get(RefreshCheckpoint, result.checkpoint_id, populate_existing=True)
        assert checkpoint.checkpoint_data["since"] == "2024-01-07"
