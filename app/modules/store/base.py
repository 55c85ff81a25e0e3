"""
Base interface for the persistence collaborator.
Both the Postgres and the in-memory store conform to this interface.
The engine works only with these CRUD operations: single-row upserts and simple
equality/range filters, no joins.
"""

from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Protocol
from uuid import UUID

from app.models.changes import AggregatedNotification, Notification, SystemChange
from app.models.conversation import Conversation, Message
from app.models.lead import Lead, LeadPhone
from app.models.queue import QueueAssignment


class StoreError(Exception):
    """A persistence operation failed. Callers may retry it."""


class LeadStore(Protocol):
    """Interface that both store backends implement."""

    # --- locks ---

    def advisory_lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Serialize work on `key` across every engine instance."""
        ...

    def try_advisory_lock(self, key: str) -> AbstractAsyncContextManager[bool]:
        """Like advisory_lock but never waits; yields whether the lock was taken."""
        ...

    # --- leads ---

    async def get_lead(self, lead_id: UUID) -> Lead | None:
        ...

    async def list_lead_phones(self, tenant_id: str | None = None) -> list[LeadPhone]:
        """Correlation candidates, limited to one tenant when `tenant_id` is given."""
        ...

    async def find_leads_by_identifier(self, identifier: str, tenant_id: str | None = None) -> list[Lead]:
        """Leads whose email or raw phone column equals `identifier`."""
        ...

    async def save_lead(self, lead: Lead) -> Lead:
        ...

    async def list_eligible_leads(self, tenant_id: str, queue_date: date) -> list[Lead]:
        """Open leads that are idle, or whose last queue date is before `queue_date`."""
        ...

    # --- conversations & messages ---

    async def find_active_conversation(self, phone: str) -> Conversation | None:
        ...

    async def get_conversation(self, conversation_id: UUID) -> Conversation | None:
        ...

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    async def insert_message(self, message: Message) -> tuple[Message, bool]:
        """Insert keyed by provider message id. Returns (stored row, created)."""
        ...

    async def get_message(self, provider_message_id: str) -> Message | None:
        ...

    async def update_message_status(self, provider_message_id: str, status: str, status_at: datetime) -> Message | None:
        ...

    async def mark_message_processed(self, provider_message_id: str, processed_at: datetime) -> None:
        ...

    async def count_inbound_messages(self, conversation_id: UUID) -> int:
        ...

    # --- change tracking ---

    async def insert_system_change(self, change: SystemChange) -> tuple[SystemChange, bool]:
        """Insert keyed by change id. Returns (stored row, created)."""
        ...

    async def list_system_changes(self, user_id: str, limit: int = 50, since: datetime | None = None) -> list[SystemChange]:
        ...

    async def mark_change_read(self, change_id: UUID, read_at: datetime) -> bool:
        ...

    async def get_unread_aggregated(self, user_id: str, notification_type: str) -> AggregatedNotification | None:
        ...

    async def save_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification:
        ...

    async def update_unread_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification | None:
        """Write the rollup only while it is still unread; None once the user has read it."""
        ...

    async def list_unread_aggregated(self, user_id: str) -> list[AggregatedNotification]:
        ...

    async def mark_aggregated_read(self, notification_id: UUID, read_at: datetime) -> AggregatedNotification | None:
        ...

    async def mark_all_aggregated_read(self, user_id: str, read_at: datetime) -> int:
        ...

    async def insert_notification(self, notification: Notification) -> Notification:
        ...

    async def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]:
        ...

    # --- queue ---

    async def get_queue_settings(self, tenant_id: str) -> dict | None:
        """Raw settings sections (work_days, processing_targets, automation, advanced)."""
        ...

    async def list_queue_tenants(self) -> list[str]:
        ...

    async def list_queue_assignments(self, tenant_id: str, queue_date: date) -> list[QueueAssignment]:
        ...

    async def save_queue_assignments(self, assignments: list[QueueAssignment]) -> list[QueueAssignment]:
        ...
