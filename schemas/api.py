"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


# ============================================================================
# Health Check Schemas
# ============================================================================

class TableHealth(BaseModel):
    """Refresh status of one table for the health check"""
    table_schema: str
    table_name: str
    is_enabled: bool
    last_refresh_at: Optional[datetime] = None
    next_refresh_at: Optional[datetime] = None
    last_status: Optional[str] = None
    success_rate: Optional[float] = Field(None, description="Percent over the last 7 days")
    average_duration_ms: Optional[float] = None
    active_checkpoint_offset: Optional[int] = None
    recent_errors: List[str] = Field(default_factory=list)
    
    class Config:
        from_attributes = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    request_id: Optional[str] = None
    database_connected: bool
    tables: List[TableHealth] = Field(default_factory=list)
    active_checkpoints: int = 0
    pending_webhook_deliveries: int = 0
    failed_tables: int = 0
    
    @staticmethod
    def determine_status(database_connected: bool, failed_tables: int, total_tables: int) -> str:
        """Determine overall health status"""
        if not database_connected:
            return "unhealthy"
        if failed_tables == 0:
            return "healthy"
        if failed_tables >= total_tables:
            return "unhealthy"
        return "degraded"
