"""
Pydantic schemas for webhook configuration, payloads and management endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import List, Dict, Any, Optional, Union
from datetime import datetime
from urllib.parse import urlparse

from models.base import WebhookEvent

SUBSCRIBABLE_EVENTS = [event.value for event in WebhookEvent]


class RetryConfig(BaseModel):
    """Typed view of webhook_configs.retry_config"""
    max_attempts: int = Field(3, ge=0, le=10)
    backoff_seconds: List[int] = Field(default_factory=lambda: [5, 30, 300])

    @validator("backoff_seconds")
    def non_empty_schedule(cls, v):
        """A schedule needs at least one delay"""
        if not v:
            raise ValueError("backoff_seconds must contain at least one delay")
        if any(delay < 0 for delay in v):
            raise ValueError("backoff_seconds must not be negative")
        return v

    @classmethod
    def from_raw(cls, raw, default: "RetryConfig") -> "RetryConfig":
        """Merge a stored JSON retry config over the defaults"""
        merged = default.model_dump()
        if isinstance(raw, dict):
            merged.update({k: v for k, v in raw.items() if v is not None})
        return cls(**merged)


class WebhookPayload(BaseModel):
    """Body POSTed to subscriber endpoints"""
    event: str
    data: Dict[str, Any]
    delivery_id: Union[int, str]
    timestamp: datetime


# ============================================================================
# Webhook config management
# ============================================================================

def _check_url(v):
    parsed = urlparse(v or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) URL")
    return v


def _check_events(v):
    if not v:
        raise ValueError("at least one event is required")
    unknown = [e for e in v if e not in SUBSCRIBABLE_EVENTS]
    if unknown:
        raise ValueError(f"unknown events: {', '.join(unknown)}")
    return list(dict.fromkeys(v))


class WebhookCreate(BaseModel):
    """Body of POST /refresh/webhooks"""
    name: str = Field(..., min_length=1, max_length=100)
    url: str
    secret: Optional[str] = None
    events: List[str]
    is_enabled: bool = True
    headers: Dict[str, str] = Field(default_factory=dict)
    retry_config: Optional[RetryConfig] = None

    @validator("url")
    def check_url(cls, v):
        """Subscribers must be reachable over http(s)"""
        return _check_url(v)

    @validator("events")
    def check_events(cls, v):
        """Only events the service emits can be subscribed to"""
        return _check_events(v)


class WebhookUpdate(BaseModel):
    """Body of PUT /refresh/webhooks; only the fields given are changed"""
    id: int
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    url: Optional[str] = None
    secret: Optional[str] = None
    events: Optional[List[str]] = None
    is_enabled: Optional[bool] = None
    headers: Optional[Dict[str, str]] = None
    retry_config: Optional[RetryConfig] = None

    @validator("url")
    def check_url(cls, v):
        """Subscribers must be reachable over http(s)"""
        return _check_url(v)

    @validator("events")
    def check_events(cls, v):
        """Only events the service emits can be subscribed to"""
        return _check_events(v)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"}, exclude_unset=True, exclude_none=True)


class WebhookStatistics(BaseModel):
    """Delivery counts over the last 24 hours"""
    total_deliveries_24h: int = 0
    successful_24h: int = 0
    failed_24h: int = 0
    pending_24h: int = 0
    last_delivery: Optional[datetime] = None
    last_status: Optional[str] = None


class WebhookView(BaseModel):
    """A webhook config as shown to operators; the secret is never returned"""
    id: int
    name: str
    url: str
    events: List[str]
    enabled: bool
    has_secret: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    retry_config: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    statistics: Optional[WebhookStatistics] = None

    @classmethod
    def from_model(cls, config, statistics: Optional[WebhookStatistics] = None) -> "WebhookView":
        return cls(
            id=config.id,
            name=config.name,
            url=config.url,
            events=list(config.events or []),
            enabled=config.is_enabled,
            has_secret=bool(config.secret),
            headers=config.headers or {},
            retry_config=config.retry_config or {},
            created_at=config.created_at,
            updated_at=config.updated_at,
            statistics=statistics,
        )


class WebhookListResponse(BaseModel):
    webhooks: List[WebhookView]
    total: int


class WebhookMutationResponse(BaseModel):
    success: bool = True
    message: str
    webhook: Optional[WebhookView] = None


# ============================================================================
# Test sends
# ============================================================================

class WebhookTestRequest(BaseModel):
    """Body of POST /refresh/webhooks/test"""
    webhook_id: int
    event_type: str = WebhookEvent.REFRESH_COMPLETED.value


class WebhookTestResult(BaseModel):
    """Outcome of a one-off signed test request (nothing is persisted)"""
    success: bool
    webhook_name: str
    webhook_url: str
    event_type: str
    signature_used: bool
    request_body: Dict[str, Any]
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    time_ms: int = 0
    error: Optional[str] = None


# ============================================================================
# Deliveries
# ============================================================================

class DeliveryView(BaseModel):
    id: int
    webhook_config_id: int
    webhook_name: Optional[str] = None
    webhook_url: Optional[str] = None
    event_type: str
    status: str
    attempt_count: int
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    event_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, delivery) -> "DeliveryView":
        config = delivery.webhook_config
        return cls(
            id=delivery.id,
            webhook_config_id=delivery.webhook_config_id,
            webhook_name=config.name if config else None,
            webhook_url=config.url if config else None,
            event_type=delivery.event_type,
            status=delivery.status.value,
            attempt_count=delivery.attempt_count,
            next_retry_at=delivery.next_retry_at,
            created_at=delivery.created_at,
            delivered_at=delivery.delivered_at,
            response_status=delivery.response_status,
            error_message=delivery.error_message,
            event_data=delivery.event_data or {},
        )


class DeliverySummary(BaseModel):
    """Counts over every delivery matching the filters, not just the page"""
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_event: Dict[str, int] = Field(default_factory=dict)


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> "Pagination":
        total_pages = (total + page_size - 1) // page_size
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


class DeliveryListResponse(BaseModel):
    deliveries: List[DeliveryView]
    summary: DeliverySummary
    pagination: Pagination
    filters: Dict[str, Any] = Field(default_factory=dict)


class DeliveryRetryRequest(BaseModel):
    """Body of POST /refresh/webhooks/deliveries"""
    delivery_ids: List[int] = Field(..., min_length=1)


class DeliveryRetryResponse(BaseModel):
    success: bool = True
    message: str
    delivery_ids: List[int]
