"""Notification channel implementations.

Each channel handles delivery for one transport (log, email, webhook).
The NotificationManager dispatches to the appropriate channel.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    LOG = "log"
    EMAIL = "email"
    WEBHOOK = "webhook"


@dataclass
class Notification:
    """A notification to be delivered."""
    title: str
    message: str
    channel: NotificationChannel = NotificationChannel.LOG
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: str = ""  # email address or webhook URL
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: NotificationChannel
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through this channel."""
        ...

    def _delivered(self, recipient: str, message: str) -> DeliveryResult:
        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=recipient,
            message=message,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )


# ─── Log Channel ───────────────────────────────────────────────

class LogChannel(BaseChannel):
    """Write notifications to the structured log. Always available."""

    channel_type = NotificationChannel.LOG

    _LEVELS = {
        NotificationPriority.LOW: "debug",
        NotificationPriority.NORMAL: "info",
        NotificationPriority.HIGH: "warning",
        NotificationPriority.CRITICAL: "error",
    }

    async def send(self, notification: Notification) -> DeliveryResult:
        level = self._LEVELS.get(notification.priority, "info")
        getattr(logger, level)(
            "Workflow notification",
            title=notification.title,
            message=notification.message,
            recipient=notification.recipient or None,
            **{f"meta_{k}": v for k, v in notification.metadata.items()},
        )
        return self._delivered(notification.recipient or "log", "Logged")


# ─── Email Channel ─────────────────────────────────────────────

class EmailChannel(BaseChannel):
    """Send notifications via SMTP email.

    Config:
        smtp_host, smtp_port, smtp_user, smtp_password,
        from_address, use_tls
    """

    channel_type = NotificationChannel.EMAIL

    def __init__(self, config: dict = None):
        self.config = config or {}

    async def send(self, notification: Notification) -> DeliveryResult:
        if not notification.recipient:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient="",
                error="Email notification needs a recipient",
            )
        try:
            msg = MIMEText(notification.message, "plain")
            msg["Subject"] = notification.title
            msg["From"] = self.config.get("from_address", "workflows@localhost")
            msg["To"] = notification.recipient

            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(self._send_smtp, notification.recipient, msg)
            return self._delivered(notification.recipient, "Email sent")

        except Exception as e:
            logger.error("Email send failed", error=str(e))
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )

    def _send_smtp(self, to_addr: str, msg: MIMEText) -> None:
        host = self.config.get("smtp_host", "localhost")
        port = self.config.get("smtp_port", 587)
        user = self.config.get("smtp_user", "")
        password = self.config.get("smtp_password", "")
        with smtplib.SMTP(host, port, timeout=30) as server:
            if self.config.get("use_tls", True):
                server.starttls()
            if user and password:
                server.login(user, password)
            server.sendmail(msg["From"], [to_addr], msg.as_string())


# ─── Webhook Channel ──────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """Send notifications to arbitrary HTTP endpoints.

    Config:
        url: Default target URL (the notification recipient overrides it)
        method: HTTP method (default POST)
        headers: Additional headers
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(self, config: dict = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or {}
        self._transport = transport

    async def send(self, notification: Notification) -> DeliveryResult:
        url = notification.recipient or self.config.get("url")
        if not url:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient="",
                error="No webhook URL",
            )
        try:
            method = self.config.get("method", "POST").upper()
            headers = {
                "Content-Type": "application/json",
                "X-Workflow-Event": "notification",
                **self.config.get("headers", {}),
            }
            payload = {
                "title": notification.title,
                "message": notification.message,
                "priority": notification.priority.value,
                "metadata": notification.metadata,
                "timestamp": notification.created_at,
            }

            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                response = await client.request(method, url, json=payload, headers=headers)
                response.raise_for_status()

            return self._delivered(url, f"Webhook delivered (HTTP {response.status_code})")

        except Exception as e:
            logger.error("Webhook send failed", url=url, error=str(e))
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=url,
                error=str(e),
            )
