"""
Response models for GET /refresh/metrics
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime


class RecentError(BaseModel):
    timestamp: datetime
    error: str
    code: Optional[str] = None


class DailyMetrics(BaseModel):
    date: date
    total_refreshes: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: int = 0
    total_rows: int = 0
    average_duration_ms: int = 0
    unique_tables: int = 0


class TableMetrics(BaseModel):
    table_name: str
    total_refreshes: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: int = 0
    average_duration_ms: int = 0
    average_rows_per_refresh: int = 0
    total_rows_processed: int = 0
    last_refresh: Optional[datetime] = None
    last_status: Optional[str] = None
    recent_errors: List[RecentError] = Field(default_factory=list)


class MetricsSummary(BaseModel):
    period_days: int
    total_refreshes: int = 0
    successful: int = 0
    failed: int = 0
    overall_success_rate: int = 0
    total_rows_processed: int = 0
    average_duration_ms: int = 0
    busiest_day: Optional[DailyMetrics] = None
    most_failed_table: Optional[str] = None


class MetricsPeriod(BaseModel):
    start: datetime
    end: datetime
    days: int


class RefreshMetricsResponse(BaseModel):
    summary: MetricsSummary
    daily_metrics: List[DailyMetrics] = Field(default_factory=list)
    table_metrics: List[TableMetrics] = Field(default_factory=list)
    period: MetricsPeriod
