from datetime import datetime
from sqlalchemy import JSON, Enum
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.utcnow()


def enum_column(enum_cls):
    """
    Store enum *values* as plain strings so raw SQL (such as the partial
    index predicate on checkpoints) can compare against them.
    """
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


# ============================================================================
# ENUMS
# ============================================================================

class RefreshStatus(str, enum.Enum):
    """Audit log entry status"""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CheckpointStatus(str, enum.Enum):
    """Checkpoint lease status"""
    ACTIVE = "active"
    COMPLETED = "completed"


class DeliveryStatus(str, enum.Enum):
    """Webhook delivery status"""
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookEvent(str, enum.Enum):
    """Events a webhook can subscribe to"""
    REFRESH_COMPLETED = "refresh.completed"
    REFRESH_FAILED = "refresh.failed"
