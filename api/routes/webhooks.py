"""
Webhook subscriber management, test sends and delivery history
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_runtime
from models.base import DeliveryStatus
from refresh.runtime import RefreshRuntime
from refresh.webhook_configs import WebhookConfigStore
from schemas.webhook import (
    DeliveryListResponse,
    DeliveryRetryRequest,
    DeliveryRetryResponse,
    WebhookCreate,
    WebhookListResponse,
    WebhookMutationResponse,
    WebhookTestRequest,
    WebhookTestResult,
    WebhookUpdate,
    WebhookView,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh/webhooks", tags=["Webhooks"])


@router.get("", response_model=WebhookListResponse)
async def list_webhooks(db: AsyncSession = Depends(get_db)):
    """Subscribers newest first, each with 24h delivery statistics"""
    rows = await WebhookConfigStore(db).list_with_stats()
    views = [WebhookView.from_model(config, stats) for config, stats in rows]
    return WebhookListResponse(webhooks=views, total=len(views))


@router.post("", response_model=WebhookMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(data: WebhookCreate, db: AsyncSession = Depends(get_db)):
    config = await WebhookConfigStore(db).create(data)
    return WebhookMutationResponse(
        message=f"Webhook {config.name} created",
        webhook=WebhookView.from_model(config),
    )


@router.put("", response_model=WebhookMutationResponse)
async def update_webhook(data: WebhookUpdate, db: AsyncSession = Depends(get_db)):
    config = await WebhookConfigStore(db).update(data)
    return WebhookMutationResponse(
        message=f"Webhook {config.name} updated",
        webhook=WebhookView.from_model(config),
    )


@router.delete("", response_model=WebhookMutationResponse)
async def delete_webhook(
    id: int = Query(..., description="Webhook id"),
    db: AsyncSession = Depends(get_db)
):
    """Delete a subscriber and its delivery history"""
    await WebhookConfigStore(db).delete(id)
    return WebhookMutationResponse(message=f"Webhook {id} deleted")


@router.post("/test", response_model=WebhookTestResult)
async def test_webhook(
    data: WebhookTestRequest,
    db: AsyncSession = Depends(get_db),
    runtime: RefreshRuntime = Depends(get_runtime)
):
    """
    Send one signed sample event to a subscriber and report its response.
    
    Nothing is recorded in webhook_deliveries. A subscriber that answers
    with an error status still yields 200 with success=false.
    """
    config = await WebhookConfigStore(db).get(data.webhook_id)
    return await runtime.webhook_queue(db).send_test(config, data.event_type)


@router.post("/process")
async def process_webhooks(runtime: RefreshRuntime = Depends(get_runtime)):
    """
    Send due deliveries now.
    
    For deployments without the internal scheduler; a full batch queues a
    follow-up drain on the continuation workers.
    """
    stats = await runtime.drain_webhooks()
    return {"success": True, **stats}


@router.get("/deliveries", response_model=DeliveryListResponse)
async def list_deliveries(
    webhook_id: Optional[int] = Query(None),
    status: Optional[DeliveryStatus] = Query(None),
    event_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    runtime: RefreshRuntime = Depends(get_runtime)
):
    """Delivery history, newest first"""
    return await runtime.webhook_queue(db).list_deliveries(
        webhook_id=webhook_id,
        status=status.value if status else None,
        event_type=event_type,
        page=page,
        page_size=page_size,
    )


@router.post("/deliveries", response_model=DeliveryRetryResponse)
async def retry_deliveries(
    data: DeliveryRetryRequest,
    db: AsyncSession = Depends(get_db),
    runtime: RefreshRuntime = Depends(get_runtime)
):
    """Put failed deliveries back in the queue with a fresh attempt budget"""
    retried = await runtime.webhook_queue(db).retry_failed(data.delivery_ids)
    return DeliveryRetryResponse(
        message=f"Queued {len(retried)} deliveries for retry",
        delivery_ids=retried,
    )
