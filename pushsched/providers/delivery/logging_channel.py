from __future__ import annotations

import logging

from pushsched.domain.models import Notification
from pushsched.providers.delivery.base import DeliveryResult


logger = logging.getLogger(__name__)


class LoggingDeliveryChannel:
    """Development channel: records the send in the log and always succeeds."""

    async def verify(self) -> None:
        logger.warning("delivery_channel_log_only notifications will not reach devices")

    async def send(self, notification: Notification) -> DeliveryResult:
        payload = notification.payload_json or {}
        logger.info(
            "notification_logged id=%s recipient=%s title=%s",
            notification.id,
            notification.recipient,
            payload.get("title"),
        )
        return DeliveryResult.ok(provider_message_id=f"log:{notification.id}")
