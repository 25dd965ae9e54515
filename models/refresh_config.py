from sqlalchemy import Column, Integer, String, Boolean, DateTime, UniqueConstraint, Index
from models.base import Base, JSONType, utcnow


class RefreshConfig(Base):
    """
    One row per synchronized table.
    
    Purpose:
    - Which worker function refreshes the table
    - Schedule (frequency, next due time) and priority
    - Enablement switch; disabling a table also abandons any pending continuation
    
    Design:
    - Seeded at bootstrap, never deleted during normal operation
    - next_refresh_at = last_refresh_at + refresh_frequency_hours after each success
    - custom_sync_params holds per-table knobs (e.g. lookback_days)
    """
    __tablename__ = "refresh_config"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    
    table_schema = Column(String(100), nullable=False, default="sqp")
    table_name = Column(String(100), nullable=False)
    function_name = Column(String(100), nullable=False)
    
    is_enabled = Column(Boolean, nullable=False, default=True)
    refresh_frequency_hours = Column(Integer, nullable=False, default=24)
    priority = Column(Integer, nullable=False, default=100)
    
    last_refresh_at = Column(DateTime, nullable=True)
    next_refresh_at = Column(DateTime, nullable=True, index=True)
    last_attempt_at = Column(DateTime, nullable=True)
    last_rows_processed = Column(Integer, nullable=True)
    
    custom_sync_params = Column(JSONType, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    
    __table_args__ = (
        UniqueConstraint("table_schema", "table_name", name="uq_refresh_config_table"),
        Index("idx_refresh_config_priority", "is_enabled", "priority"),
    )
