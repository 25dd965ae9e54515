"""
Webhook config store: operator-managed subscriber endpoints and their
recent delivery statistics.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import DeliveryStatus
from models.webhook import DEFAULT_RETRY_CONFIG, WebhookConfig, WebhookDelivery
from schemas.webhook import WebhookCreate, WebhookStatistics, WebhookUpdate
from core.exceptions import WebhookConfigError, WebhookNotFoundError

logger = logging.getLogger(__name__)


class WebhookConfigStore:
    """
    CRUD for webhook_configs.

    Responsibilities:
    - List endpoints newest first, with 24h delivery counts and the
      latest delivery's status
    - Create, partially update and delete endpoints
    - Deleting an endpoint deletes its delivery history
    """

    def __init__(
        self,
        db_session: AsyncSession,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_session
        self.clock = clock or datetime.utcnow

    async def get(self, webhook_id: int) -> WebhookConfig:
        config = await self.db.get(WebhookConfig, webhook_id, populate_existing=True)
        if config is None:
            raise WebhookNotFoundError("Webhook not found", context={"webhook_id": webhook_id})
        return config

    async def list_with_stats(self) -> List[Tuple[WebhookConfig, WebhookStatistics]]:
        result = await self.db.execute(
            select(WebhookConfig).order_by(WebhookConfig.created_at.desc(), WebhookConfig.id.desc())
        )
        configs = list(result.scalars().all())
        stats = await self._statistics([c.id for c in configs])
        return [(c, stats.get(c.id, WebhookStatistics())) for c in configs]

    async def _statistics(self, webhook_ids: List[int]) -> Dict[int, WebhookStatistics]:
        if not webhook_ids:
            return {}
        since = self.clock() - timedelta(hours=24)
        stats = {webhook_id: WebhookStatistics() for webhook_id in webhook_ids}

        counts = await self.db.execute(
            select(WebhookDelivery.webhook_config_id, WebhookDelivery.status, func.count())
            .where(
                WebhookDelivery.webhook_config_id.in_(webhook_ids),
                WebhookDelivery.created_at >= since,
            )
            .group_by(WebhookDelivery.webhook_config_id, WebhookDelivery.status)
        )
        for webhook_id, status, count in counts.all():
            item = stats[webhook_id]
            item.total_deliveries_24h += count
            if status == DeliveryStatus.SUCCESS:
                item.successful_24h += count
            elif status == DeliveryStatus.FAILED:
                item.failed_24h += count
            else:
                item.pending_24h += count

        latest_ids = (
            select(func.max(WebhookDelivery.id).label("last_id"))
            .where(WebhookDelivery.webhook_config_id.in_(webhook_ids))
            .group_by(WebhookDelivery.webhook_config_id)
            .subquery()
        )
        latest = await self.db.execute(
            select(WebhookDelivery).join(latest_ids, WebhookDelivery.id == latest_ids.c.last_id)
        )
        for delivery in latest.scalars().all():
            item = stats[delivery.webhook_config_id]
            item.last_delivery = delivery.created_at
            item.last_status = delivery.status.value

        return stats

    async def create(self, data: WebhookCreate) -> WebhookConfig:
        now = self.clock()
        config = WebhookConfig(
            name=data.name,
            url=data.url,
            secret=data.secret,
            events=list(data.events),
            is_enabled=data.is_enabled,
            headers=dict(data.headers),
            retry_config=data.retry_config.model_dump() if data.retry_config else dict(DEFAULT_RETRY_CONFIG),
            created_at=now,
            updated_at=now,
        )
        self.db.add(config)
        await self.db.commit()

        logger.info(f"Webhook {config.id} ({config.name}) created for {config.events}")
        return config

    async def update(self, data: WebhookUpdate) -> WebhookConfig:
        changes = data.changes()
        if not changes:
            raise WebhookConfigError("No fields to update", context={"webhook_id": data.id})

        config = await self.get(data.id)
        for field, value in changes.items():
            setattr(config, field, value)
        config.updated_at = self.clock()
        await self.db.commit()

        logger.info(f"Webhook {config.id} updated: {sorted(changes)}")
        return config

    async def delete(self, webhook_id: int):
        await self.get(webhook_id)
        await self.db.execute(
            delete(WebhookDelivery).where(WebhookDelivery.webhook_config_id == webhook_id)
        )
        await self.db.execute(delete(WebhookConfig).where(WebhookConfig.id == webhook_id))
        await self.db.commit()

        logger.info(f"Webhook {webhook_id} deleted")
