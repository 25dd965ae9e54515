"""
Webhook delivery queue: signed refresh notifications with exponential backoff.

Notifications are written as delivery rows when an event happens and
sent later by ``process_pending``, so a slow or failing subscriber never
blocks a refresh.
"""

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import logging

import httpx
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models.base import DeliveryStatus, WebhookEvent
from models.webhook import WebhookConfig, WebhookDelivery
from refresh.continuation import ContinuationQueue, WebhookDrainContinuation
from schemas.webhook import (
    DeliveryListResponse,
    DeliverySummary,
    DeliveryView,
    Pagination,
    RetryConfig,
    WebhookPayload,
    WebhookTestResult,
)
from core.exceptions import DeliveryNotFoundError, WebhookConfigError, WebhookDeliveryError

logger = logging.getLogger(__name__)

USER_AGENT = "warehouse-refresh-webhooks/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_payload(body: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def backoff_delay(attempt: int, schedule: Sequence[int]) -> int:
    """Delay before retry number ``attempt`` (0-based); the last step repeats."""
    return schedule[min(attempt, len(schedule) - 1)]


class WebhookDeliveryQueue:
    """
    Enqueue and deliver webhook notifications.
    
    Responsibilities:
    - enqueue: one pending delivery per enabled, subscribed endpoint
    - process_pending: send due deliveries oldest first, sign payloads,
      record responses, schedule retries from the endpoint's backoff
      schedule and fail deliveries that exhausted their attempts
    - Hand off to a fresh drain when a batch came back full
    - Operator actions: one-off test sends, filtered delivery listing,
      requeueing deliveries that failed permanently
    """
    
    def __init__(
        self,
        db_session: AsyncSession,
        http_client: httpx.AsyncClient,
        continuations: Optional[ContinuationQueue] = None,
        default_retry: Optional[RetryConfig] = None,
        timeout_seconds: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_session
        self.http = http_client
        self.continuations = continuations
        self.default_retry = default_retry or RetryConfig()
        self.timeout_seconds = timeout_seconds
        self.clock = clock or datetime.utcnow
    
    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------
    
    async def subscribers(self, event_type: str) -> List[WebhookConfig]:
        result = await self.db.execute(
            select(WebhookConfig)
            .where(WebhookConfig.is_enabled.is_(True))
            .order_by(WebhookConfig.id)
        )
        return [c for c in result.scalars().all() if event_type in (c.events or [])]
    
    async def enqueue(
        self,
        event_type: str,
        event_data: Dict[str, Any],
        configs: Optional[Sequence[WebhookConfig]] = None
    ) -> List[WebhookDelivery]:
        if configs is None:
            configs = await self.subscribers(event_type)
        if not configs:
            return []
        
        now = self.clock()
        deliveries = [
            WebhookDelivery(
                webhook_config_id=config.id,
                event_type=event_type,
                event_data=event_data,
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                created_at=now,
            )
            for config in configs
        ]
        self.db.add_all(deliveries)
        await self.db.commit()
        
        logger.info(f"Queued {len(deliveries)} webhook deliveries for {event_type}")
        return deliveries
    
    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------
    
    async def due_deliveries(self, max_batch: int) -> List[WebhookDelivery]:
        now = self.clock()
        result = await self.db.execute(
            select(WebhookDelivery)
            .join(WebhookConfig, WebhookDelivery.webhook_config_id == WebhookConfig.id)
            .where(
                WebhookConfig.is_enabled.is_(True),
                WebhookDelivery.status.in_([DeliveryStatus.PENDING, DeliveryStatus.RETRYING]),
                or_(
                    WebhookDelivery.next_retry_at.is_(None),
                    WebhookDelivery.next_retry_at <= now,
                ),
            )
            .options(selectinload(WebhookDelivery.webhook_config))
            .order_by(WebhookDelivery.created_at.asc(), WebhookDelivery.id.asc())
            .limit(max_batch)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
    
    async def process_pending(self, max_batch: int = 10) -> Dict[str, int]:
        """
        Send up to ``max_batch`` due deliveries.
        
        Returns:
            Counts of processed, succeeded, retrying and failed deliveries
        """
        deliveries = await self.due_deliveries(max_batch)
        stats = {"processed": 0, "succeeded": 0, "retrying": 0, "failed": 0}
        
        for delivery in deliveries:
            status = await self._deliver(delivery)
            stats["processed"] += 1
            if status == DeliveryStatus.SUCCESS:
                stats["succeeded"] += 1
            elif status == DeliveryStatus.RETRYING:
                stats["retrying"] += 1
            else:
                stats["failed"] += 1
        
        if deliveries:
            logger.info(
                f"Webhook drain: {stats['succeeded']} delivered, "
                f"{stats['retrying']} retrying, {stats['failed']} failed"
            )
        
        if len(deliveries) == max_batch and self.continuations is not None:
            await self.continuations.enqueue(WebhookDrainContinuation(max_batch=max_batch))
        
        return stats
    
    def _build_request(
        self,
        config: WebhookConfig,
        event_type: str,
        data: Dict[str, Any],
        delivery_id: Union[int, str]
    ):
        payload = WebhookPayload(
            event=event_type,
            data=data,
            delivery_id=delivery_id,
            timestamp=self.clock(),
        )
        body_obj = payload.model_dump(mode="json")
        body = json.dumps(body_obj).encode("utf-8")
        
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": event_type,
            "X-Webhook-Delivery": str(delivery_id),
        }
        headers.update({str(k): str(v) for k, v in (config.headers or {}).items()})
        if config.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, config.secret)
        return body_obj, body, headers
    
    async def _deliver(self, delivery: WebhookDelivery) -> DeliveryStatus:
        config = delivery.webhook_config
        body_obj, body, headers = self._build_request(
            config, delivery.event_type, delivery.event_data or {}, delivery.id
        )
        delivery.request_headers = {k: v for k, v in headers.items() if k != SIGNATURE_HEADER}
        delivery.request_body = body_obj
        
        try:
            response = await self.http.post(
                config.url,
                content=body,
                headers=headers,
                timeout=self.timeout_seconds
            )
        except httpx.HTTPError as e:
            error = WebhookDeliveryError(
                f"Webhook request failed: {type(e).__name__}",
                context={"delivery_id": delivery.id, "url": config.url},
                original_exception=e
            )
            return await self._record_failure(delivery, config, error, response=None)
        
        if 200 <= response.status_code < 300:
            now = self.clock()
            delivery.status = DeliveryStatus.SUCCESS
            delivery.response_status = response.status_code
            delivery.response_body = response.text[:1000]
            delivery.delivered_at = now
            delivery.next_retry_at = None
            delivery.error_message = None
            await self.db.commit()
            logger.info(f"Webhook delivery {delivery.id} sent to {config.name}")
            return DeliveryStatus.SUCCESS
        
        error = WebhookDeliveryError(
            f"Webhook endpoint returned {response.status_code}",
            context={"delivery_id": delivery.id, "url": config.url, "status_code": response.status_code}
        )
        return await self._record_failure(delivery, config, error, response=response)
    
    async def _record_failure(
        self,
        delivery: WebhookDelivery,
        config: WebhookConfig,
        error: WebhookDeliveryError,
        response: Optional[httpx.Response]
    ) -> DeliveryStatus:
        retry = RetryConfig.from_raw(config.retry_config, self.default_retry)
        
        if response is not None:
            delivery.response_status = response.status_code
            delivery.response_body = response.text[:1000]
        delivery.error_message = error.message
        
        if delivery.attempt_count < retry.max_attempts:
            delay = backoff_delay(delivery.attempt_count, retry.backoff_seconds)
            delivery.status = DeliveryStatus.RETRYING
            delivery.next_retry_at = self.clock() + timedelta(seconds=delay)
            delivery.attempt_count += 1
            logger.warning(
                f"Webhook delivery {delivery.id} failed ({error.message}); "
                f"retry {delivery.attempt_count}/{retry.max_attempts} in {delay}s"
            )
        else:
            delivery.status = DeliveryStatus.FAILED
            delivery.next_retry_at = None
            logger.error(
                f"Webhook delivery {delivery.id} failed permanently after "
                f"{delivery.attempt_count} retries: {error.message}"
            )
        
        await self.db.commit()
        return delivery.status
    
    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    
    async def send_test(self, config: WebhookConfig, event_type: str) -> WebhookTestResult:
        """
        Send one signed sample notification to ``config`` right away.
        
        Nothing is persisted; transport errors are reported in the result.
        
        Raises:
            WebhookConfigError: endpoint disabled or not subscribed to ``event_type``
        """
        if not config.is_enabled:
            raise WebhookConfigError("Webhook is disabled", context={"webhook_id": config.id})
        if event_type not in (config.events or []):
            raise WebhookConfigError(
                f"Webhook is not subscribed to {event_type} events",
                context={"webhook_id": config.id, "event_type": event_type}
            )
        
        now = self.clock()
        failed = event_type == WebhookEvent.REFRESH_FAILED.value
        data = {
            "test": True,
            "audit_log_id": f"test-{int(now.timestamp())}",
            "table_schema": "sqp",
            "table_name": "test_table",
            "function_name": "test-function",
            "status": "failed" if failed else "success",
            "rows_processed": 1000,
            "error_message": "Test error message" if failed else None,
        }
        body_obj, body, headers = self._build_request(config, event_type, data, "test")
        result = WebhookTestResult(
            success=False,
            webhook_name=config.name,
            webhook_url=config.url,
            event_type=event_type,
            signature_used=bool(config.secret),
            request_body=body_obj,
        )
        
        started = time.monotonic()
        try:
            response = await self.http.post(
                config.url,
                content=body,
                headers=headers,
                timeout=self.timeout_seconds
            )
        except httpx.HTTPError as e:
            result.error = f"{type(e).__name__}: {e}"
        else:
            result.success = 200 <= response.status_code < 300
            result.response_status = response.status_code
            result.response_body = response.text[:1000]
        result.time_ms = int((time.monotonic() - started) * 1000)
        
        logger.info(
            f"Test {event_type} sent to webhook {config.id}: "
            f"{result.response_status or result.error}"
        )
        return result
    
    def _delivery_filters(
        self,
        webhook_id: Optional[int],
        status: Optional[str],
        event_type: Optional[str]
    ) -> list:
        filters = []
        if webhook_id is not None:
            filters.append(WebhookDelivery.webhook_config_id == webhook_id)
        if status:
            filters.append(WebhookDelivery.status == DeliveryStatus(status))
        if event_type:
            filters.append(WebhookDelivery.event_type == event_type)
        return filters
    
    async def list_deliveries(
        self,
        webhook_id: Optional[int] = None,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> DeliveryListResponse:
        """Newest deliveries first, one page at a time, with filter-wide counts."""
        filters = self._delivery_filters(webhook_id, status, event_type)
        
        by_status = await self.db.execute(
            select(WebhookDelivery.status, func.count())
            .where(*filters)
            .group_by(WebhookDelivery.status)
        )
        summary = DeliverySummary(
            by_status={s.value: 0 for s in DeliveryStatus}
        )
        for delivery_status, count in by_status.all():
            summary.by_status[delivery_status.value] = count
            summary.total += count
        
        by_event = await self.db.execute(
            select(WebhookDelivery.event_type, func.count())
            .where(*filters)
            .group_by(WebhookDelivery.event_type)
        )
        summary.by_event = {event: count for event, count in by_event.all()}
        
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(*filters)
            .options(selectinload(WebhookDelivery.webhook_config))
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return DeliveryListResponse(
            deliveries=[DeliveryView.from_model(d) for d in result.scalars().all()],
            summary=summary,
            pagination=Pagination.build(page, page_size, summary.total),
            filters={"webhook_id": webhook_id, "status": status, "event_type": event_type},
        )
    
    async def retry_failed(self, delivery_ids: Sequence[int]) -> List[int]:
        """
        Put failed deliveries back in the queue with a fresh attempt budget.
        
        Deliveries that are not ``failed`` are left alone.
        
        Raises:
            DeliveryNotFoundError: none of the ids is a failed delivery
        """
        result = await self.db.execute(
            select(WebhookDelivery.id).where(
                WebhookDelivery.id.in_(list(delivery_ids)),
                WebhookDelivery.status == DeliveryStatus.FAILED,
            )
        )
        retry_ids = sorted(result.scalars().all())
        if not retry_ids:
            raise DeliveryNotFoundError(
                "No failed deliveries found with the provided IDs",
                context={"delivery_ids": list(delivery_ids)}
            )
        
        await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id.in_(retry_ids),
                WebhookDelivery.status == DeliveryStatus.FAILED,
            )
            .values(
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                next_retry_at=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Requeued {len(retry_ids)} failed webhook deliveries: {retry_ids}")
        
        if self.continuations is not None:
            await self.continuations.enqueue(WebhookDrainContinuation())
        return retry_ids
