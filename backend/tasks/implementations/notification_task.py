"""Notification task.

Formats a message and dispatches it through the NotificationManager.
"""

from typing import Any, Dict, Optional

from notifications.channels import Notification, NotificationChannel, NotificationPriority
from notifications.manager import NotificationManager, get_notification_manager
from tasks.base_task import BaseTask, TaskResult


class NotificationTask(BaseTask):
    """Send a notification.

    Config:
        message: Message body (required, already interpolated)
        title: Subject line (default: the workflow name)
        channel: "log" | "email" | "webhook" (default: log)
        recipient: Email address or webhook URL
        priority: "low" | "normal" | "high" | "critical"
        metadata: Extra key/value pairs passed to the channel
    """

    task_type = "notification"
    display_name = "Notification"
    description = "Format and dispatch a message"

    def __init__(self, manager: Optional[NotificationManager] = None):
        self._manager = manager

    @property
    def manager(self) -> NotificationManager:
        if self._manager is None:
            self._manager = get_notification_manager()
        return self._manager

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        message = config.get("message")
        if message is None:
            return TaskResult(success=False, error="Missing required config: message")

        try:
            channel = NotificationChannel(config.get("channel", "log"))
            priority = NotificationPriority(config.get("priority", "normal"))
        except ValueError as e:
            return TaskResult(success=False, error=str(e))

        instance = (context or {}).get("instance")
        default_title = instance.definition.name if instance is not None else "Workflow notification"
        metadata = dict(config.get("metadata") or {})
        if instance is not None:
            metadata.setdefault("instance_id", instance.id)
            metadata.setdefault("workflow_id", instance.workflow_id)

        notification = Notification(
            title=str(config.get("title") or default_title),
            message=str(message),
            channel=channel,
            priority=priority,
            recipient=str(config.get("recipient") or ""),
            metadata=metadata,
        )
        delivery = await self.manager.send(notification)
        if not delivery.success:
            return TaskResult(success=False, error=f"Notification failed: {delivery.error}")

        return TaskResult(
            success=True,
            output={
                "notification_channel": channel.value,
                "notification_recipient": delivery.recipient,
                "notification_delivered_at": delivery.delivered_at,
            },
        )


# Export for task registry
NOTIFICATION_TASK_TYPES = {
    "notification": NotificationTask,
}
