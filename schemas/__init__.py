"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for request/response validation
and for the typed values passed between refresh components:

Schemas:
    refresh: Trigger request/response, refresh targets, worker options and results
    metrics: Aggregated refresh metrics returned by the API
    performance: Rows written to the synchronized target tables
    webhook: Retry configuration and delivery payloads
    api: Health check response models

Features:
    - Automatic data validation
    - Lenient numeric/date coercion for warehouse rows
    - JSON serialization/deserialization
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.refresh import TriggerRequest, RefreshTarget, WorkerOptions
    from schemas.performance import SearchQueryPerformanceRow

Example:
    # Missing numerics default to zero instead of failing the batch
    row = SearchQueryPerformanceRow(
        start_date="2024-01-01",
        end_date="2024-01-07",
        asin="B000TEST01",
        search_query="usb cable",
        impressions=None,
    )
    assert row.impressions == 0
"""

__all__ = [
    "TriggerRequest",
    "TriggerResponse",
    "TableRunOutcome",
    "RefreshTarget",
    "WorkerOptions",
    "WorkerResult",
    "AuditMetrics",
    "RefreshMetricsResponse",
    "RetryConfig",
    "AsinPerformanceRow",
    "SearchQueryPerformanceRow",
    "HealthCheckResponse",
]
