"""Cross-product notifications for ingested entities and new connections.

Delivery is best-effort. Each entity can trigger at most a fixed number of
notifications per sliding one-hour window.
"""

import time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 3600


class CrossProductNotificationType(str, Enum):
    """Kinds of cross-product notification."""
    ENTITY_UPDATE = "cross_product:entity_update"
    NEW_CONNECTION = "cross_product:new_connection"


class CrossProductNotification(BaseModel):
    """A notification about graph activity originating in one product."""

    notification_type: CrossProductNotificationType
    workspace_id: str
    entity_id: str
    entity_name: str
    product_source: str
    actor_id: Optional[str] = None
    related_entity_id: Optional[str] = None
    related_entity_name: Optional[str] = None


class CrossProductNotifier:
    """Rate-limited notifier. Subclasses override :meth:`deliver`."""

    def __init__(self, rate_limit_per_hour: int = 10):
        self.rate_limit_per_hour = rate_limit_per_hour
        self._sent_at: Dict[str, List[float]] = {}

    async def notify_entity_ingest(
        self,
        workspace_id: str,
        entity_id: str,
        entity_name: str,
        product_source: str,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Announce that an existing entity was seen again.

        Returns:
            True if a notification was delivered, False if rate limited
        """
        return await self._send(
            CrossProductNotification(
                notification_type=CrossProductNotificationType.ENTITY_UPDATE,
                workspace_id=workspace_id,
                entity_id=entity_id,
                entity_name=entity_name,
                product_source=product_source,
                actor_id=actor_id,
            )
        )

    async def notify_new_connection(
        self,
        workspace_id: str,
        from_entity_id: str,
        from_entity_name: str,
        to_entity_id: str,
        to_entity_name: str,
        product_source: str,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Announce a relationship created by an ingestion call."""
        return await self._send(
            CrossProductNotification(
                notification_type=CrossProductNotificationType.NEW_CONNECTION,
                workspace_id=workspace_id,
                entity_id=from_entity_id,
                entity_name=from_entity_name,
                product_source=product_source,
                actor_id=actor_id,
                related_entity_id=to_entity_id,
                related_entity_name=to_entity_name,
            )
        )

    async def deliver(self, notification: CrossProductNotification) -> None:
        LOGGER.info(
            "Cross-product notification",
            extra=notification.model_dump(mode="json"),
        )

    def is_rate_limited(self, entity_id: str) -> bool:
        now = time.monotonic()
        recent = [t for t in self._sent_at.get(entity_id, []) if now - t < RATE_LIMIT_WINDOW_SECONDS]
        if recent:
            self._sent_at[entity_id] = recent
        else:
            # Entities with nothing in the window hold no state
            self._sent_at.pop(entity_id, None)
        return len(recent) >= self.rate_limit_per_hour

    async def _send(self, notification: CrossProductNotification) -> bool:
        if self.is_rate_limited(notification.entity_id):
            LOGGER.debug(
                "Notification rate limited",
                extra={"entity_id": notification.entity_id},
            )
            return False

        await self.deliver(notification)
        self._sent_at.setdefault(notification.entity_id, []).append(time.monotonic())
        return True
