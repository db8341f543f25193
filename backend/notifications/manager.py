"""Notification Manager — central dispatcher for notification channels.

The notification step handler formats a message and hands it here; the
manager routes it to the channel named in the step parameters.
"""

from typing import Optional

import structlog

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    EmailChannel,
    LogChannel,
    Notification,
    NotificationChannel,
    WebhookChannel,
)

logger = structlog.get_logger(__name__)


class NotificationManager:
    """Central notification dispatcher.

    The log channel is always registered. Email and webhook channels are
    added by configure_channels(). Singleton — use get_notification_manager().
    """

    def __init__(self):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        self.register_channel(LogChannel())

    def register_channel(self, channel: BaseChannel) -> None:
        """Register (or replace) the channel for its channel_type."""
        self._channels[channel.channel_type] = channel
        logger.debug("Notification channel registered", channel=channel.channel_type.value)

    def configure_channels(self, config: dict) -> None:
        """Configure channels from settings.

        Args:
            config: Dict with channel configs:
                {
                    "email": {"smtp_host": ..., "smtp_port": ...},
                    "webhook": {"url": ...},
                }
        """
        if "email" in config:
            self.register_channel(EmailChannel(config["email"]))
        if "webhook" in config:
            self.register_channel(WebhookChannel(config["webhook"]))

    @property
    def channels(self) -> list[str]:
        return [ch.value for ch in self._channels]

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through the channel it names."""
        channel = self._channels.get(notification.channel)
        if not channel:
            return DeliveryResult(
                success=False,
                channel=notification.channel,
                recipient=notification.recipient,
                error=f"Channel not configured: {notification.channel.value}",
            )

        result = await channel.send(notification)

        if result.success:
            logger.info(
                "Notification sent",
                channel=notification.channel.value,
                recipient=result.recipient,
            )
        else:
            logger.warning(
                "Notification failed",
                channel=notification.channel.value,
                error=result.error,
            )
        return result


# ─── Singleton ─────────────────────────────────────────────────

_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    """Get or create the singleton NotificationManager."""
    global _manager
    if _manager is None:
        from app.config import get_settings

        _manager = NotificationManager()
        _manager.configure_channels(get_settings().notification_config)
    return _manager
