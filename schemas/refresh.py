"""
Typed structures passed between the orchestrator, the worker and the API
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============================================================================
# Trigger API
# ============================================================================

class TriggerRequest(BaseModel):
    """Body of POST /refresh/trigger"""
    table_name: Optional[str] = Field(None, max_length=100)
    force: bool = False
    
    @validator("table_name", pre=True)
    def clean_table_name(cls, v):
        """Blank table names mean a full run"""
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("table_name must be a string")
        v = v.strip()
        return v or None
    
    class Config:
        extra = "ignore"


class TableRunOutcome(BaseModel):
    """Result of refreshing one table, as reported by the orchestrator"""
    table: str
    success: bool
    rows_processed: int = 0
    completed: bool = False
    status_code: int = 200
    audit_log_id: Optional[int] = None
    error: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    
    @property
    def skipped(self) -> bool:
        """Not run because the table was throttled or already in progress"""
        return self.status_code in (409, 429)


class TriggerResponse(BaseModel):
    """Successful trigger response"""
    success: bool
    message: str
    type: str = Field(..., description="full or single")
    table: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Structured error body used by the refresh endpoints"""
    success: bool = False
    error: str
    code: str
    category: str
    details: Optional[Any] = None
    table: Optional[str] = None


# ============================================================================
# Worker inputs / outputs
# ============================================================================

class RefreshTarget(BaseModel):
    """
    Immutable snapshot of a refresh_config row.
    
    Workers receive this instead of the ORM object so nothing lazy-loads
    across session boundaries.
    """
    config_id: Optional[int] = None
    table_schema: str
    table_name: str
    function_name: str
    is_enabled: bool = True
    refresh_frequency_hours: int = 24
    priority: int = 100
    last_refresh_at: Optional[datetime] = None
    next_refresh_at: Optional[datetime] = None
    lookback_days: Optional[int] = Field(None, ge=1)
    batch_size: Optional[int] = Field(None, ge=1, le=10000)
    
    class Config:
        frozen = True


class WorkerOptions(BaseModel):
    """Every knob the table refresh worker recognizes, with its default"""
    batch_size: int = Field(1000, ge=1)
    function_timeout_seconds: float = Field(300, gt=0)
    safety_margin_seconds: float = Field(30, ge=0)
    upsert_timeout_seconds: float = Field(30, gt=0)
    lease_seconds: int = Field(3600, ge=1)
    
    @property
    def time_budget_seconds(self) -> float:
        return max(self.function_timeout_seconds - self.safety_margin_seconds, 0)
    
    @classmethod
    def from_settings(cls, settings) -> "WorkerOptions":
        return cls(
            batch_size=settings.REFRESH_BATCH_SIZE,
            function_timeout_seconds=settings.FUNCTION_TIMEOUT_SECONDS,
            safety_margin_seconds=settings.TIME_BUDGET_SAFETY_MARGIN_SECONDS,
            upsert_timeout_seconds=settings.UPSERT_TIMEOUT_SECONDS,
            lease_seconds=settings.CHECKPOINT_LEASE_SECONDS,
        )


class WorkerResult(BaseModel):
    """Outcome of one worker invocation"""
    rows_processed: int = 0
    completed: bool = False
    batches: int = 0
    checkpoint_id: Optional[int] = None
    skipped_rows: int = 0


class AuditMetrics(BaseModel):
    """Completion metrics written to an audit entry"""
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    execution_time_ms: Optional[int] = None
    bigquery_job_id: Optional[str] = None
    sync_metadata: Dict[str, Any] = Field(default_factory=dict)


class ReclaimedCheckpoint(BaseModel):
    """Summary of a lease reclaimed by maintenance"""
    checkpoint_id: int
    function_name: str
    table_name: str
    offset: int
    reclaim_count: int
    previous_audit_log_id: Optional[int] = None


class RunSummary(BaseModel):
    """Consolidated orchestrator run"""
    results: List[TableRunOutcome] = Field(default_factory=list)
    
    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)
    
    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)
    
    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)


# ============================================================================
# Config management API
# ============================================================================

def _positive_param(params: Dict[str, Any], name: str, upper: Optional[int] = None):
    value = params.get(name)
    if value is None:
        return
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer")
    if number < 1 or (upper is not None and number > upper):
        bound = f"between 1 and {upper}" if upper else "at least 1"
        raise ValueError(f"{name} must be {bound}")


class RefreshConfigUpdate(BaseModel):
    """Body of PUT /refresh/config"""
    id: int
    is_enabled: Optional[bool] = None
    refresh_frequency_hours: Optional[int] = Field(None, ge=1, le=168)
    priority: Optional[int] = Field(None, ge=0, le=1000)
    custom_sync_params: Optional[Dict[str, Any]] = None
    
    @validator("custom_sync_params")
    def check_sync_params(cls, v):
        """Knobs the worker reads must be usable"""
        if v is None:
            return v
        _positive_param(v, "batch_size", upper=10000)
        _positive_param(v, "lookback_days")
        return v
    
    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"}, exclude_unset=True, exclude_none=True)


class RefreshConfigView(BaseModel):
    """One refresh_config row as shown to operators"""
    id: int
    table_name: str
    table_schema: str
    function_name: str
    enabled: bool
    frequency_hours: int
    priority: int
    custom_sync_params: Dict[str, Any] = Field(default_factory=dict)
    last_refresh: Optional[datetime] = None
    next_refresh: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    
    @classmethod
    def from_model(cls, config) -> "RefreshConfigView":
        return cls(
            id=config.id,
            table_name=config.table_name,
            table_schema=config.table_schema,
            function_name=config.function_name,
            enabled=config.is_enabled,
            frequency_hours=config.refresh_frequency_hours,
            priority=config.priority,
            custom_sync_params=config.custom_sync_params or {},
            last_refresh=config.last_refresh_at,
            next_refresh=config.next_refresh_at,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


class ConfigSummary(BaseModel):
    total_tables: int = 0
    enabled_tables: int = 0
    disabled_tables: int = 0
    average_frequency_hours: float = 0
    highest_priority_table: Optional[str] = None
    lowest_priority_table: Optional[str] = None
    
    @classmethod
    def from_views(cls, views: List[RefreshConfigView]) -> "ConfigSummary":
        """Views must already be ordered by priority, highest first"""
        if not views:
            return cls()
        enabled = sum(1 for v in views if v.enabled)
        return cls(
            total_tables=len(views),
            enabled_tables=enabled,
            disabled_tables=len(views) - enabled,
            average_frequency_hours=round(sum(v.frequency_hours for v in views) / len(views), 1),
            highest_priority_table=views[0].table_name,
            lowest_priority_table=views[-1].table_name,
        )


class RefreshConfigListResponse(BaseModel):
    configurations: List[RefreshConfigView]
    summary: ConfigSummary


class RefreshConfigUpdateResponse(BaseModel):
    success: bool = True
    message: str
    configuration: RefreshConfigView
    changes: List[str]
