"""
Core utilities and configuration for the warehouse refresh service.

This package provides foundational components used throughout the refresh pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database handle (engine + session factory) passed to components
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import Database
    from core.exceptions import SourceTransientError, UnknownTableError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()
    
    # Open a session from an explicitly created handle
    database = Database.from_settings(settings)
    async with database.session() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "Database",
    "setup_logging",
    # Exceptions
    "SyncException",
    "SourceError",
    "SourceTransientError",
    "SourceRateLimitError",
    "SourceAuthError",
    "SourceQueryError",
    "TargetError",
    "TargetTransientError",
    "UpsertError",
    "CheckpointError",
    "CheckpointConflictError",
    "RefreshInProgressError",
    "RefreshConfigError",
    "UnknownTableError",
    "TableDisabledError",
    "RefreshThrottledError",
    "InvalidTriggerError",
    "InvalidConfigError",
    "RefreshError",
    "WebhookDeliveryError",
    "WebhookConfigError",
    "WebhookNotFoundError",
    "DeliveryNotFoundError",
    "RetryableError",
    "NonRetryableError",
]
