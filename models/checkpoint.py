from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Index, text
from models.base import Base, CheckpointStatus, JSONType, enum_column, utcnow


class RefreshCheckpoint(Base):
    """
    Lease-style progress marker per (function, table).
    
    Purpose:
    - Resume a refresh exactly where the previous invocation stopped
    - Act as the per-table mutex: at most one ``active`` row per identity
    - Recover from crashed workers through lease expiry
    
    Design:
    - checkpoint_data holds the cursor ({"offset": n, "last_start_date": ...})
    - every mutation is a conditional UPDATE on (id, status, version)
    - expires_at is renewed on every advance; reclaiming an expired lease
      keeps the cursor and bumps reclaim_count
    - completed rows are history; a new run inserts a fresh active row
    """
    __tablename__ = "refresh_checkpoints"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    
    # Identity
    function_name = Column(String(100), nullable=False)
    table_schema = Column(String(100), nullable=False)
    table_name = Column(String(100), nullable=False)
    status = Column(enum_column(CheckpointStatus), nullable=False, default=CheckpointStatus.ACTIVE)
    
    # Progress
    checkpoint_data = Column(JSONType, nullable=False, default=dict)
    last_processed_row = Column(BigInteger, nullable=False, default=0)
    total_rows = Column(BigInteger, nullable=True)
    
    # Lease
    version = Column(Integer, nullable=False, default=1)
    audit_log_id = Column(Integer, nullable=True)
    reclaim_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=False)
    
    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    
    __table_args__ = (
        Index(
            "uq_refresh_checkpoint_active",
            "function_name", "table_schema", "table_name", "status",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_refresh_checkpoint_expiry", "status", "expires_at"),
    )
    
    @property
    def offset(self) -> int:
        return int((self.checkpoint_data or {}).get("offset", 0))
