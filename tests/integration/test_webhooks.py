"""
Tests for webhook delivery: signing, retries with backoff and batch hand-off
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest

from sqlalchemy import select, func

from core.exceptions import WebhookNotFoundError
from models.base import DeliveryStatus
from models.webhook import WebhookConfig, WebhookDelivery
from refresh.webhook_configs import WebhookConfigStore
from refresh.webhooks import SIGNATURE_HEADER, WebhookDeliveryQueue, verify_signature
from schemas.webhook import RetryConfig, WebhookCreate, WebhookUpdate

T0 = datetime(2024, 3, 1, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now
    
    def __call__(self) -> datetime:
        return self.now


async def add_webhook(session, **overrides) -> WebhookConfig:
    values = dict(
        name="ops",
        url="https://hooks.test/refresh",
        secret="s3cret",
        events=["refresh.completed", "refresh.failed"],
        is_enabled=True,
    )
    values.update(overrides)
    config = WebhookConfig(**values)
    session.add(config)
    await session.commit()
    return config


def client_returning(status_code: int, requests: list) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="nope" if status_code >= 400 else "ok")
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestEnqueue:
    """Fan-out to subscribed endpoints"""
    
    @pytest.mark.asyncio
    async def test_only_enabled_subscribers_get_deliveries(self, db_session, http_client):
        await add_webhook(db_session, name="all")
        await add_webhook(db_session, name="failures", events=["refresh.failed"])
        await add_webhook(db_session, name="off", is_enabled=False)
        queue = WebhookDeliveryQueue(db_session, http_client)
        
        deliveries = await queue.enqueue("refresh.completed", {"table_name": "asin_performance_data"})
        
        assert len(deliveries) == 1
        assert deliveries[0].status == DeliveryStatus.PENDING
        assert deliveries[0].attempt_count == 0
    
    @pytest.mark.asyncio
    async def test_no_subscribers(self, db_session, http_client):
        queue = WebhookDeliveryQueue(db_session, http_client)
        assert await queue.enqueue("refresh.failed", {}) == []


class TestDelivery:
    """Sending due deliveries"""
    
    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(self, db_session, http_client, webhook_requests):
        await add_webhook(db_session, headers={"X-Team": "data"})
        queue = WebhookDeliveryQueue(db_session, http_client)
        [delivery] = await queue.enqueue("refresh.completed", {"table_name": "asin_performance_data"})
        
        stats = await queue.process_pending()
        
        assert stats == {"processed": 1, "succeeded": 1, "retrying": 0, "failed": 0}
        request = webhook_requests[0]
        assert verify_signature(request.content, "s3cret", request.headers[SIGNATURE_HEADER])
        assert request.headers["X-Webhook-Event"] == "refresh.completed"
        assert request.headers["X-Team"] == "data"
        body = json.loads(request.content)
        assert body["event"] == "refresh.completed"
        assert body["data"]["table_name"] == "asin_performance_data"
        assert body["delivery_id"] == delivery.id
        
        assert delivery.status == DeliveryStatus.SUCCESS
        assert delivery.response_status == 200
        assert delivery.delivered_at is not None
        assert SIGNATURE_HEADER not in delivery.request_headers
    
    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self, db_session, http_client, webhook_requests):
        await add_webhook(db_session, secret=None)
        queue = WebhookDeliveryQueue(db_session, http_client)
        await queue.enqueue("refresh.failed", {})
        
        await queue.process_pending()
        
        assert SIGNATURE_HEADER not in webhook_requests[0].headers
    
    @pytest.mark.asyncio
    async def test_backoff_schedule_then_permanent_failure(self, db_session):
        requests = []
        clock = FakeClock(T0)
        await add_webhook(db_session)
        async with client_returning(500, requests) as client:
            queue = WebhookDeliveryQueue(
                db_session,
                client,
                default_retry=RetryConfig(max_attempts=3, backoff_seconds=[5, 30, 300]),
                clock=clock
            )
            [delivery] = await queue.enqueue("refresh.failed", {"table_name": "asin_performance_data"})
            
            await queue.process_pending()
            assert delivery.status == DeliveryStatus.RETRYING
            assert delivery.attempt_count == 1
            assert delivery.next_retry_at == T0 + timedelta(seconds=5)
            assert delivery.response_status == 500
            
            clock.now = T0 + timedelta(seconds=4)
            assert (await queue.process_pending())["processed"] == 0
            
            clock.now = T0 + timedelta(seconds=5)
            await queue.process_pending()
            assert delivery.attempt_count == 2
            assert delivery.next_retry_at == clock.now + timedelta(seconds=30)
            
            clock.now = delivery.next_retry_at
            await queue.process_pending()
            assert delivery.attempt_count == 3
            assert delivery.next_retry_at == clock.now + timedelta(seconds=300)
            
            clock.now = delivery.next_retry_at
            stats = await queue.process_pending()
            assert stats["failed"] == 1
            assert delivery.status == DeliveryStatus.FAILED
            assert delivery.next_retry_at is None
            
            clock.now = T0 + timedelta(days=1)
            assert (await queue.process_pending())["processed"] == 0
        
        assert len(requests) == 4
    
    @pytest.mark.asyncio
    async def test_endpoint_retry_config_overrides_default(self, db_session):
        requests = []
        clock = FakeClock(T0)
        await add_webhook(db_session, retry_config={"max_attempts": 0})
        async with client_returning(503, requests) as client:
            queue = WebhookDeliveryQueue(db_session, client, clock=clock)
            [delivery] = await queue.enqueue("refresh.failed", {})
            
            await queue.process_pending()
        
        assert delivery.status == DeliveryStatus.FAILED
    
    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, db_session):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused")
        
        await add_webhook(db_session)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            queue = WebhookDeliveryQueue(db_session, client, clock=FakeClock(T0))
            [delivery] = await queue.enqueue("refresh.failed", {})
            
            stats = await queue.process_pending()
        
        assert stats["retrying"] == 1
        assert delivery.response_status is None
        assert "ConnectError" in delivery.error_message
    
    @pytest.mark.asyncio
    async def test_disabling_an_endpoint_pauses_its_deliveries(self, db_session, http_client, webhook_requests):
        config = await add_webhook(db_session)
        queue = WebhookDeliveryQueue(db_session, http_client)
        await queue.enqueue("refresh.completed", {})
        
        config.is_enabled = False
        await db_session.commit()
        
        assert (await queue.process_pending())["processed"] == 0
        assert webhook_requests == []


class TestDrainHandOff:
    """A full batch queues another drain"""
    
    @pytest.mark.asyncio
    async def test_full_batch_queues_drain_continuation(self, runtime, db_session, webhook_requests):
        await add_webhook(db_session)
        queue = runtime.webhook_queue(db_session)
        for i in range(3):
            await queue.enqueue("refresh.completed", {"run": i})
        
        stats = await queue.process_pending(max_batch=2)
        
        assert stats["processed"] == 2
        assert runtime.continuations.pending() == 1
        
        await runtime.continuations.run_pending()
        
        assert len(webhook_requests) == 3
        assert runtime.continuations.pending() == 0


class TestWebhookConfigStore:
    """Operator-managed subscriber endpoints"""
    
    @pytest.mark.asyncio
    async def test_create_uses_default_retry_policy(self, db_session):
        store = WebhookConfigStore(db_session, clock=FakeClock(T0))
        
        config = await store.create(WebhookCreate(
            name="ops", url="https://hooks.test/refresh", events=["refresh.completed"]
        ))
        
        assert config.retry_config == {"max_attempts": 3, "backoff_seconds": [5, 30, 300]}
        assert config.created_at == T0
    
    @pytest.mark.asyncio
    async def test_update_changes_only_given_fields(self, db_session):
        config = await add_webhook(db_session)
        store = WebhookConfigStore(db_session, clock=FakeClock(T0))
        
        updated = await store.update(WebhookUpdate(id=config.id, url="https://hooks.test/v2"))
        
        assert updated.url == "https://hooks.test/v2"
        assert updated.secret == "s3cret"
        assert updated.updated_at == T0
    
    @pytest.mark.asyncio
    async def test_delete_removes_delivery_history(self, db_session, http_client):
        config = await add_webhook(db_session)
        keep = await add_webhook(db_session, name="keep")
        queue = WebhookDeliveryQueue(db_session, http_client)
        await queue.enqueue("refresh.completed", {"table_name": "asin_performance_data"})
        
        await WebhookConfigStore(db_session).delete(config.id)
        
        remaining = await db_session.execute(
            select(WebhookDelivery.webhook_config_id, func.count()).group_by(WebhookDelivery.webhook_config_id)
        )
        assert remaining.all() == [(keep.id, 1)]
        with pytest.raises(WebhookNotFoundError):
            await WebhookConfigStore(db_session).get(config.id)


class TestSendTest:
    """One-off signed test requests"""
    
    @pytest.mark.asyncio
    async def test_transport_errors_are_reported(self, db_session):
        config = await add_webhook(db_session)
        
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)
        
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await WebhookDeliveryQueue(db_session, client).send_test(config, "refresh.completed")
        
        assert result.success is False
        assert result.response_status is None
        assert "ConnectError" in result.error
        assert result.request_body["delivery_id"] == "test"
    
    @pytest.mark.asyncio
    async def test_error_status_is_not_success(self, db_session):
        config = await add_webhook(db_session, secret=None)
        requests = []
        
        result = await WebhookDeliveryQueue(
            db_session, client_returning(500, requests)
        ).send_test(config, "refresh.completed")
        
        assert result.success is False
        assert result.response_status == 500
        assert result.response_body == "nope"
        assert result.signature_used is False
        assert SIGNATURE_HEADER not in requests[0].headers
