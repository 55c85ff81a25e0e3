"""
Notification sink: "create notification for user X". Delivery happens downstream of the stored row.
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

from app.models.changes import Notification
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: str,
        metadata: dict | None = None,
        action_url: str | None = None,
    ) -> Notification:
        ...


class StoreNotificationSink:
    """Writes notifications to the notifications table."""

    def __init__(self, store: LeadStore):
        self.store = store

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: str,
        metadata: dict | None = None,
        action_url: str | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=severity,
            action_url=action_url,
            metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        stored = await with_retries(
            lambda: self.store.insert_notification(notification),
            f"create notification for {user_id}",
        )
        logger.info("Notification [%s] for %s: %s", severity, user_id, title)
        return stored
