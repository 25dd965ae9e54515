"""
Tests for the refresh audit log
"""

from datetime import datetime, timedelta

import pytest

from core.exceptions import SourceTransientError
from models.base import RefreshStatus
from refresh.audit import AuditLogger
from schemas.refresh import AuditMetrics, RefreshTarget

TARGET = RefreshTarget(
    table_schema="sqp",
    table_name="asin_performance_data",
    function_name="refresh-asin-performance",
)


@pytest.mark.asyncio
async def test_start_creates_running_entry(db_session):
    audit = AuditLogger(db_session)
    
    audit_id = await audit.start(TARGET)
    entry = await audit.get(audit_id)
    
    assert entry.status == RefreshStatus.RUNNING
    assert entry.refresh_completed_at is None
    assert entry.sync_metadata["invocations"] == 0


@pytest.mark.asyncio
async def test_success_records_metrics(db_session):
    audit = AuditLogger(db_session)
    audit_id = await audit.start(TARGET)
    
    written = await audit.succeed(audit_id, AuditMetrics(
        rows_processed=5,
        rows_inserted=5,
        bigquery_job_id="job_1",
        sync_metadata={"invocations": 2},
    ))
    entry = await audit.get(audit_id)
    
    assert written
    assert entry.status == RefreshStatus.SUCCESS
    assert entry.rows_processed == 5
    assert entry.bigquery_job_id == "job_1"
    assert entry.execution_time_ms >= 0
    assert entry.sync_metadata["invocations"] == 2
    assert entry.sync_metadata["function_name"] == "refresh-asin-performance"


@pytest.mark.asyncio
async def test_completion_is_written_once(db_session):
    audit = AuditLogger(db_session)
    audit_id = await audit.start(TARGET)
    await audit.succeed(audit_id, AuditMetrics(rows_processed=3))
    
    written = await audit.fail(audit_id, SourceTransientError("late failure"))
    entry = await audit.get(audit_id)
    
    assert not written
    assert entry.status == RefreshStatus.SUCCESS
    assert entry.error_message is None


@pytest.mark.asyncio
async def test_failure_keeps_structured_error(db_session):
    audit = AuditLogger(db_session)
    audit_id = await audit.start(TARGET)
    
    await audit.fail(
        audit_id,
        SourceTransientError("Warehouse returned 503", context={"day": datetime(2024, 1, 1)}),
        rows_processed=3
    )
    entry = await audit.get(audit_id)
    
    assert entry.status == RefreshStatus.FAILED
    assert entry.rows_processed == 3
    assert entry.error_message == "Warehouse returned 503"
    assert entry.error_details["code"] == "source_transient"
    assert entry.error_details["context"]["day"] == "2024-01-01T00:00:00"


@pytest.mark.asyncio
async def test_plain_exceptions_are_recorded(db_session):
    audit = AuditLogger(db_session)
    audit_id = await audit.start(TARGET)
    
    await audit.fail(audit_id, KeyError("asin"))
    entry = await audit.get(audit_id)
    
    assert entry.error_details["code"] == "unexpected_error"
    assert entry.error_details["error_type"] == "KeyError"


@pytest.mark.asyncio
async def test_superseded_entries_are_closed(db_session):
    audit = AuditLogger(db_session)
    orphan = await audit.start(TARGET)
    current = await audit.start(TARGET)
    
    closed = await audit.fail_superseded(TARGET.table_schema, TARGET.table_name, current)
    
    assert closed == 1
    assert (await audit.get(orphan)).status == RefreshStatus.FAILED
    assert (await audit.get(orphan)).error_details["code"] == "superseded"
    assert (await audit.get(current)).status == RefreshStatus.RUNNING


@pytest.mark.asyncio
async def test_read_queries(db_session):
    audit = AuditLogger(db_session)
    since = datetime.utcnow() - timedelta(days=1)
    
    ok = await audit.start(TARGET)
    await audit.succeed(ok, AuditMetrics(rows_processed=10, execution_time_ms=400))
    bad = await audit.start(TARGET)
    await audit.fail(bad, SourceTransientError("Warehouse returned 503"))
    running = await audit.start(TARGET)
    
    completed = await audit.completed_since(since)
    errors = await audit.recent_errors(TARGET.table_name)
    latest = await audit.latest_for_table(TARGET.table_name)
    
    assert [e.id for e in completed] == [ok, bad]
    assert [e.id for e in errors] == [bad]
    assert await audit.success_rate(TARGET.table_name, since) == 50.0
    assert await audit.average_duration_ms(TARGET.table_name, since) == 400.0
    assert await audit.success_rate("search_query_performance", since) is None
    assert latest.id == running
