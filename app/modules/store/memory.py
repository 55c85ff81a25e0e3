"""
In-memory store: same contract as the Postgres store, held in process memory.
Used for local runs (STORE_BACKEND=memory) and by the test-suite.
Rows are copied on the way in and out so callers never share mutable state.
Messages must reference a stored conversation, as the Postgres foreign key requires.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime
from uuid import UUID

from app.models.changes import AggregatedNotification, Notification, SystemChange
from app.models.conversation import Conversation, Message
from app.models.lead import Lead, LeadPhone, queue_eligible
from app.models.queue import QueueAssignment
from app.modules.store.base import StoreError


def _copy(row):
    return row.model_copy(deep=True) if row is not None else None


class MemoryStore:
    def __init__(self):
        self.leads: dict[UUID, Lead] = {}
        self.conversations: dict[UUID, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self.system_changes: list[SystemChange] = []
        self.aggregated: dict[UUID, AggregatedNotification] = {}
        self.notifications: list[Notification] = []
        self.queue_settings: dict[str, dict] = {}
        self.queue_assignments: dict[tuple[str, date], list[QueueAssignment]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- locks ---

    @asynccontextmanager
    async def advisory_lock(self, key: str):
        async with self._locks[key]:
            yield

    @asynccontextmanager
    async def try_advisory_lock(self, key: str):
        lock = self._locks[key]
        if lock.locked():
            yield False
            return
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()

    # --- leads ---

    async def get_lead(self, lead_id: UUID) -> Lead | None:
        return _copy(self.leads.get(lead_id))

    async def list_lead_phones(self, tenant_id: str | None = None) -> list[LeadPhone]:
        return [
            LeadPhone(id=lead.id, phone=lead.phone, last_interaction=lead.last_interaction)
            for lead in self.leads.values()
            if lead.phone and (tenant_id is None or lead.tenant_id == tenant_id)
        ]

    async def find_leads_by_identifier(self, identifier: str, tenant_id: str | None = None) -> list[Lead]:
        needle = identifier.strip().lower()
        return [
            _copy(lead) for lead in self.leads.values()
            if ((lead.email and lead.email.lower() == needle) or lead.phone == identifier)
            and (tenant_id is None or lead.tenant_id == tenant_id)
        ]

    async def save_lead(self, lead: Lead) -> Lead:
        self.leads[lead.id] = _copy(lead)
        return _copy(lead)

    async def list_eligible_leads(self, tenant_id: str, queue_date: date) -> list[Lead]:
        return [
            _copy(lead) for lead in self.leads.values()
            if lead.tenant_id == tenant_id and queue_eligible(lead, queue_date)
        ]

    # --- conversations & messages ---

    async def find_active_conversation(self, phone: str) -> Conversation | None:
        active = [c for c in self.conversations.values() if c.participant_phone == phone and c.status == "active"]
        if not active:
            return None
        return _copy(max(active, key=lambda c: c.started_at))

    async def get_conversation(self, conversation_id: UUID) -> Conversation | None:
        return _copy(self.conversations.get(conversation_id))

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = _copy(conversation)
        return _copy(conversation)

    async def insert_message(self, message: Message) -> tuple[Message, bool]:
        existing = self.messages.get(message.provider_message_id)
        if existing:
            return _copy(existing), False
        if message.conversation_id is not None and message.conversation_id not in self.conversations:
            raise StoreError(f"insert_message: conversation {message.conversation_id} does not exist")
        self.messages[message.provider_message_id] = _copy(message)
        return _copy(message), True

    async def get_message(self, provider_message_id: str) -> Message | None:
        return _copy(self.messages.get(provider_message_id))

    async def update_message_status(self, provider_message_id: str, status: str, status_at: datetime) -> Message | None:
        message = self.messages.get(provider_message_id)
        if not message:
            return None
        message.status = status
        message.status_updated_at = status_at
        return _copy(message)

    async def mark_message_processed(self, provider_message_id: str, processed_at: datetime) -> None:
        message = self.messages.get(provider_message_id)
        if message:
            message.processed_at = processed_at

    async def count_inbound_messages(self, conversation_id: UUID) -> int:
        return sum(
            1 for m in self.messages.values()
            if m.conversation_id == conversation_id and m.direction == "inbound"
        )

    # --- change tracking ---

    async def insert_system_change(self, change: SystemChange) -> tuple[SystemChange, bool]:
        for existing in self.system_changes:
            if existing.id == change.id:
                return _copy(existing), False
        self.system_changes.append(_copy(change))
        return _copy(change), True

    async def list_system_changes(self, user_id: str, limit: int = 50, since: datetime | None = None) -> list[SystemChange]:
        rows = [c for c in self.system_changes if c.user_id == user_id and (since is None or c.created_at >= since)]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return [_copy(c) for c in rows[:limit]]

    async def mark_change_read(self, change_id: UUID, read_at: datetime) -> bool:
        for change in self.system_changes:
            if change.id == change_id:
                change.is_read = True
                change.read_at = read_at
                return True
        return False

    async def get_unread_aggregated(self, user_id: str, notification_type: str) -> AggregatedNotification | None:
        for row in self.aggregated.values():
            if row.user_id == user_id and row.notification_type == notification_type and not row.is_read:
                return _copy(row)
        return None

    async def save_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification:
        self.aggregated[notification.id] = _copy(notification)
        return _copy(notification)

    async def update_unread_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification | None:
        current = self.aggregated.get(notification.id)
        if current is None or current.is_read:
            return None
        self.aggregated[notification.id] = _copy(notification)
        return _copy(notification)

    async def list_unread_aggregated(self, user_id: str) -> list[AggregatedNotification]:
        rows = [r for r in self.aggregated.values() if r.user_id == user_id and not r.is_read]
        rows.sort(key=lambda r: r.last_updated, reverse=True)
        return [_copy(r) for r in rows]

    async def mark_aggregated_read(self, notification_id: UUID, read_at: datetime) -> AggregatedNotification | None:
        row = self.aggregated.get(notification_id)
        if not row:
            return None
        row.is_read = True
        row.read_at = read_at
        return _copy(row)

    async def mark_all_aggregated_read(self, user_id: str, read_at: datetime) -> int:
        count = 0
        for row in self.aggregated.values():
            if row.user_id == user_id and not row.is_read:
                row.is_read = True
                row.read_at = read_at
                count += 1
        return count

    async def insert_notification(self, notification: Notification) -> Notification:
        self.notifications.append(_copy(notification))
        return _copy(notification)

    async def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]:
        rows = [n for n in self.notifications if n.user_id == user_id]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in rows[:limit]]

    # --- queue ---

    async def get_queue_settings(self, tenant_id: str) -> dict | None:
        settings = self.queue_settings.get(tenant_id)
        return dict(settings) if settings is not None else None

    async def set_queue_settings(self, tenant_id: str, sections: dict) -> None:
        self.queue_settings[tenant_id] = dict(sections)

    async def list_queue_tenants(self) -> list[str]:
        return sorted(self.queue_settings)

    async def list_queue_assignments(self, tenant_id: str, queue_date: date) -> list[QueueAssignment]:
        rows = self.queue_assignments.get((tenant_id, queue_date), [])
        return [_copy(a) for a in sorted(rows, key=lambda a: a.position)]

    async def save_queue_assignments(self, assignments: list[QueueAssignment]) -> list[QueueAssignment]:
        saved = []
        for assignment in assignments:
            rows = self.queue_assignments.setdefault((assignment.tenant_id, assignment.queue_date), [])
            if any(a.lead_id == assignment.lead_id for a in rows):
                continue
            rows.append(_copy(assignment))
            saved.append(_copy(assignment))
        return saved
