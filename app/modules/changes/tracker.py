"""
Change Tracker & Notification Aggregator.

Every mutation the engine makes is written as an append-only SystemChange and
folded into one unread rollup per (user, entity type): the first change opens a
rollup at count 1, later ones bump the count and regenerate its text, and once
the user reads it the next change opens a fresh rollup.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from app.models.changes import AggregatedNotification, SystemChange
from app.modules.changes.templates import aggregated_description, aggregated_title, change_description
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeTracker:
    def __init__(self, store: LeadStore):
        self.store = store

    # ===== TRACKING =====

    async def track(self, change: SystemChange) -> SystemChange:
        """Record `change` and fold it into the user's rollup for that entity type."""
        stored, created = await with_retries(
            lambda: self.store.insert_system_change(change),
            f"insert system change {change.entity_type}/{change.entity_id}",
        )
        if not created:
            logger.info("System change %s already recorded", change.id)
            return stored
        await with_retries(
            lambda: self._update_aggregated(change.user_id, change.entity_type, change.change_type),
            f"aggregate {change.entity_type} change for {change.user_id}",
        )
        logger.info(
            "Tracked %s %s on %s %s for %s",
            change.entity_type, change.change_type, change.entity_type, change.entity_id, change.user_id,
        )
        return stored

    async def track_entity_change(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        change_type: str,
        old_values: dict | None = None,
        new_values: dict | None = None,
        source: str = "system",
        description: str | None = None,
        metadata: dict | None = None,
        change_id: UUID | None = None,
    ) -> SystemChange:
        """Pass a stable `change_id` to make replays of the same change a no-op."""
        now = _now()
        return await self.track(SystemChange(
            id=change_id or uuid4(),
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            change_type=change_type,
            old_values=old_values,
            new_values=new_values,
            description=description or change_description(entity_type, change_type),
            metadata={"timestamp": now.isoformat(), "source": source, **(metadata or {})},
            created_at=now,
        ))

    async def track_lead_change(self, user_id: str, lead_id: UUID | str, change_type: str,
                                old_values: dict | None = None, new_values: dict | None = None,
                                source: str = "system", metadata: dict | None = None,
                                change_id: UUID | None = None) -> SystemChange:
        return await self.track_entity_change(
            user_id, "lead", str(lead_id), change_type, old_values, new_values,
            source=source, metadata=metadata, change_id=change_id,
        )

    async def track_message_change(self, user_id: str, message_id: str, change_type: str,
                                   old_values: dict | None = None, new_values: dict | None = None,
                                   source: str = "whatsapp", change_id: UUID | None = None) -> SystemChange:
        return await self.track_entity_change(
            user_id, "message", message_id, change_type, old_values, new_values, source=source, change_id=change_id,
        )

    async def track_meeting_change(self, user_id: str, meeting_id: str, change_type: str,
                                   old_values: dict | None = None, new_values: dict | None = None,
                                   source: str = "calendly") -> SystemChange:
        return await self.track_entity_change(
            user_id, "meeting", meeting_id, change_type, old_values, new_values, source=source,
        )

    # ===== AGGREGATION =====

    async def _update_aggregated(self, user_id: str, entity_type: str, change_type: str) -> AggregatedNotification:
        # Read-then-write on the (user, type) rollup; serialized so concurrent deliveries never lose an increment.
        async with self.store.advisory_lock(f"aggregated:{user_id}:{entity_type}"):
            now = _now()
            existing = await self.store.get_unread_aggregated(user_id, entity_type)

            if existing:
                existing.count += 1
                existing.title = aggregated_title(entity_type, existing.count)
                existing.description = aggregated_description(entity_type, existing.count)
                existing.last_updated = now
                existing.metadata = {
                    **existing.metadata,
                    "latest_change": change_type,
                    "last_change_time": now.isoformat(),
                }
                # Read paths do not take this lock; a rollup read in the meantime stays closed
                updated = await self.store.update_unread_aggregated(existing)
                if updated:
                    return updated
                logger.info("Rollup %s was read before update; opening a new one", existing.id)

            return await self.store.save_aggregated(AggregatedNotification(
                user_id=user_id,
                notification_type=entity_type,
                count=1,
                title=aggregated_title(entity_type, 1),
                description=aggregated_description(entity_type, 1),
                last_updated=now,
                created_at=now,
                metadata={"latest_change": change_type, "last_change_time": now.isoformat()},
            ))

    # ===== RETRIEVING =====

    async def get_aggregated_notifications(self, user_id: str) -> list[AggregatedNotification]:
        return await self.store.list_unread_aggregated(user_id)

    async def get_recent_changes(self, user_id: str, limit: int = 50) -> list[SystemChange]:
        return await self.store.list_system_changes(user_id, limit=limit)

    async def get_change_statistics(self, user_id: str, days: int = 30, limit: int = 10000) -> dict:
        since = _now() - timedelta(days=days)
        changes = await self.store.list_system_changes(user_id, limit=limit, since=since)

        by_entity = Counter(c.entity_type for c in changes)
        by_change = Counter(c.change_type for c in changes)
        by_day = Counter(c.created_at.date().isoformat() for c in changes)
        return {
            "total_changes": len(changes),
            "by_entity_type": dict(by_entity),
            "by_change_type": dict(by_change),
            "by_day": dict(sorted(by_day.items())),
        }

    # ===== MARKING AS READ =====

    async def mark_notification_read(self, notification_id: UUID) -> AggregatedNotification | None:
        row = await self.store.mark_aggregated_read(notification_id, _now())
        if row:
            logger.info("Aggregated notification %s marked as read (count=%d)", notification_id, row.count)
        return row

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = await self.store.mark_all_aggregated_read(user_id, _now())
        logger.info("Marked %d aggregated notifications as read for %s", count, user_id)
        return count

    async def mark_change_read(self, change_id: UUID) -> bool:
        return await self.store.mark_change_read(change_id, _now())
