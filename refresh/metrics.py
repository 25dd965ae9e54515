"""
Aggregation of completed audit rows into the metrics report.

Pure functions: the route loads the rows, this module shapes them.
"""

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from models.audit_log import RefreshAuditLog
from models.base import RefreshStatus
from schemas.metrics import (
    DailyMetrics,
    MetricsPeriod,
    MetricsSummary,
    RecentError,
    RefreshMetricsResponse,
    TableMetrics,
)

MIN_DAYS = 1
MAX_DAYS = 30
RECENT_ERROR_LIMIT = 3


def clamp_days(days: Optional[int]) -> int:
    if days is None:
        return 7
    return min(MAX_DAYS, max(MIN_DAYS, days))


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def _status(log: RefreshAuditLog) -> str:
    status = log.status
    return status.value if isinstance(status, RefreshStatus) else str(status)


def build_refresh_metrics(
    logs: Iterable[RefreshAuditLog],
    days: int,
    now: Optional[datetime] = None,
) -> RefreshMetricsResponse:
    """
    Build daily, per-table and overall metrics.

    ``logs`` are completed audit rows ordered by refresh_started_at
    ascending (see AuditLogger.completed_since).
    """
    now = now or datetime.utcnow()
    logs = list(logs)
    
    daily: "OrderedDict" = OrderedDict()
    tables: dict = {}
    
    for log in logs:
        status = _status(log)
        succeeded = status == RefreshStatus.SUCCESS.value
        rows = log.rows_processed or 0
        duration = log.execution_time_ms or 0
        
        day_key = log.refresh_started_at.date()
        day = daily.setdefault(day_key, {
            "total": 0, "successful": 0, "failed": 0,
            "rows": 0, "duration": 0, "tables": set(),
        })
        day["total"] += 1
        day["successful" if succeeded else "failed"] += 1
        day["rows"] += rows
        day["duration"] += duration
        day["tables"].add(log.table_name)
        
        table = tables.setdefault(log.table_name, {
            "total": 0, "successful": 0, "failed": 0, "rows": 0,
            "duration": 0, "last_refresh": None, "last_status": None, "errors": [],
        })
        table["total"] += 1
        table["successful" if succeeded else "failed"] += 1
        table["rows"] += rows
        table["duration"] += duration
        
        completed_at = log.refresh_completed_at
        if completed_at and (table["last_refresh"] is None or completed_at > table["last_refresh"]):
            table["last_refresh"] = completed_at
            table["last_status"] = status
        
        if not succeeded and log.error_message:
            details = log.error_details or {}
            table["errors"].append(RecentError(
                timestamp=log.refresh_started_at,
                error=log.error_message,
                code=details.get("code"),
            ))
    
    daily_metrics: List[DailyMetrics] = [
        DailyMetrics(
            date=day_key,
            total_refreshes=day["total"],
            successful=day["successful"],
            failed=day["failed"],
            success_rate=_percent(day["successful"], day["total"]),
            total_rows=day["rows"],
            average_duration_ms=round(day["duration"] / day["total"]) if day["total"] else 0,
            unique_tables=len(day["tables"]),
        )
        for day_key, day in daily.items()
    ]
    
    table_metrics: List[TableMetrics] = [
        TableMetrics(
            table_name=name,
            total_refreshes=table["total"],
            successful=table["successful"],
            failed=table["failed"],
            success_rate=_percent(table["successful"], table["total"]),
            average_duration_ms=round(table["duration"] / table["total"]) if table["total"] else 0,
            average_rows_per_refresh=round(table["rows"] / table["successful"]) if table["successful"] else 0,
            total_rows_processed=table["rows"],
            last_refresh=table["last_refresh"],
            last_status=table["last_status"],
            recent_errors=table["errors"][-RECENT_ERROR_LIMIT:],
        )
        for name, table in tables.items()
    ]
    table_metrics.sort(key=lambda t: (-t.total_refreshes, t.table_name))
    
    successful = sum(1 for log in logs if _status(log) == RefreshStatus.SUCCESS.value)
    busiest_day = max(daily_metrics, key=lambda d: d.total_refreshes, default=None)
    failing = [t for t in table_metrics if t.failed]
    most_failed = max(failing, key=lambda t: t.failed).table_name if failing else None
    
    summary = MetricsSummary(
        period_days=days,
        total_refreshes=len(logs),
        successful=successful,
        failed=len(logs) - successful,
        overall_success_rate=_percent(successful, len(logs)),
        total_rows_processed=sum(log.rows_processed or 0 for log in logs),
        average_duration_ms=(
            round(sum(log.execution_time_ms or 0 for log in logs) / len(logs)) if logs else 0
        ),
        busiest_day=busiest_day,
        most_failed_table=most_failed,
    )
    
    return RefreshMetricsResponse(
        summary=summary,
        daily_metrics=daily_metrics,
        table_metrics=table_metrics,
        period=MetricsPeriod(start=now - timedelta(days=days), end=now, days=days),
    )
