from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, DeliveryStatus, JSONType, enum_column, utcnow


DEFAULT_WEBHOOK_EVENTS = ["refresh.failed", "refresh.completed"]
DEFAULT_RETRY_CONFIG = {"max_attempts": 3, "backoff_seconds": [5, 30, 300]}


class WebhookConfig(Base):
    """
    Subscriber endpoint for refresh notifications.
    
    Design:
    - events lists the event types this endpoint receives
    - secret signs each payload (HMAC-SHA256, X-Webhook-Signature)
    - retry_config = {"max_attempts": int, "backoff_seconds": [int, ...]}
    """
    __tablename__ = "webhook_configs"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    secret = Column(String(255), nullable=True)
    events = Column(JSONType, nullable=False, default=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    is_enabled = Column(Boolean, nullable=False, default=True)
    headers = Column(JSONType, nullable=True)
    retry_config = Column(JSONType, nullable=False, default=lambda: dict(DEFAULT_RETRY_CONFIG))
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    
    deliveries = relationship("WebhookDelivery", back_populates="webhook_config")


class WebhookDelivery(Base):
    """
    One notification to one endpoint, tracked until success or exhaustion.
    
    Design:
    - attempt_count counts retries that have been scheduled and never
      exceeds the config's max_attempts
    - ``failed`` is terminal and only reached after attempts are exhausted
    """
    __tablename__ = "webhook_deliveries"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_config_id = Column(Integer, ForeignKey("webhook_configs.id", ondelete="CASCADE"), nullable=False)
    
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSONType, nullable=False)
    
    status = Column(enum_column(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    
    request_headers = Column(JSONType, nullable=True)
    request_body = Column(JSONType, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    delivered_at = Column(DateTime, nullable=True)
    
    webhook_config = relationship("WebhookConfig", back_populates="deliveries")
    
    __table_args__ = (
        Index("idx_webhook_delivery_due", "status", "next_retry_at"),
        Index("idx_webhook_delivery_created", "created_at"),
    )
