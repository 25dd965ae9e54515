"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, shared enums and column helpers
    refresh_config: One row per synchronized table (schedule, priority, enablement)
    checkpoint: Lease-style progress marker per (function, table)
    audit_log: One row per refresh attempt
    webhook: Subscriber endpoints and their delivery records
    performance: Target tables synchronized from the warehouse

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and fall back to JSON on other dialects, so the
    same metadata can be created on SQLite for tests.

Usage:
    from models import RefreshConfig, RefreshCheckpoint, RefreshAuditLog
    from models.base import RefreshStatus, CheckpointStatus

Relationships:
    - RefreshConfig → RefreshAuditLog (one-to-many attempts)
    - WebhookConfig → WebhookDelivery (one-to-many notifications)
"""

from models.base import (
    Base,
    RefreshStatus,
    CheckpointStatus,
    DeliveryStatus,
    WebhookEvent,
)
from models.refresh_config import RefreshConfig
from models.checkpoint import RefreshCheckpoint
from models.audit_log import RefreshAuditLog
from models.webhook import WebhookConfig, WebhookDelivery
from models.performance import AsinPerformanceData, SearchQueryPerformance

__all__ = [
    "Base",
    "RefreshStatus",
    "CheckpointStatus",
    "DeliveryStatus",
    "WebhookEvent",
    "RefreshConfig",
    "RefreshCheckpoint",
    "RefreshAuditLog",
    "WebhookConfig",
    "WebhookDelivery",
    "AsinPerformanceData",
    "SearchQueryPerformance",
]
