from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, ForeignKey, Index
from models.base import Base, RefreshStatus, JSONType, enum_column, utcnow


class RefreshAuditLog(Base):
    """
    One row per refresh attempt.
    
    Purpose:
    - Audit trail of every run (running → success | failed)
    - Source of truth for freshness, success rate and recent errors
    
    Design:
    - Completion fields are written once, by the worker owning the attempt
    - A logical run spanning several continuations keeps a single row
    - error_details holds the structured error (code, category, context)
    """
    __tablename__ = "refresh_audit_log"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    refresh_config_id = Column(Integer, ForeignKey("refresh_config.id"), nullable=True, index=True)
    
    table_schema = Column(String(100), nullable=False)
    table_name = Column(String(100), nullable=False)
    status = Column(enum_column(RefreshStatus), nullable=False, default=RefreshStatus.RUNNING)
    
    refresh_started_at = Column(DateTime, nullable=False, default=utcnow)
    refresh_completed_at = Column(DateTime, nullable=True)
    
    rows_processed = Column(BigInteger, nullable=False, default=0)
    rows_inserted = Column(BigInteger, nullable=False, default=0)
    rows_updated = Column(BigInteger, nullable=False, default=0)
    execution_time_ms = Column(BigInteger, nullable=True)
    
    bigquery_job_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    sync_metadata = Column(JSONType, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        Index("idx_refresh_audit_table_started", "table_name", "refresh_started_at"),
        Index("idx_refresh_audit_status", "status", "refresh_started_at"),
    )
