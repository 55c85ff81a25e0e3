"""
Postgres store: the LeadStore contract over an asyncpg pool.
Every query is a single-row write or a simple filtered read. Cross-instance
serialization uses session-level advisory locks held on a dedicated connection.
"""

import functools
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from uuid import UUID

import asyncpg

from app.models.changes import AggregatedNotification, Notification, SystemChange
from app.models.conversation import Conversation, Message
from app.models.lead import Lead, LeadPhone
from app.models.queue import QueueAssignment
from app.modules.store.base import StoreError

logger = logging.getLogger(__name__)

LEAD_COLUMNS = (
    "id", "tenant_id", "phone", "name", "email",
    "pipeline_status", "qualification_state", "bant_heat", "processing_state", "queue_status",
    "interaction_count", "follow_up_count",
    "first_interaction", "last_interaction", "next_follow_up", "last_agent_processed_at",
    "requires_human_review", "metadata", "queue_metadata", "applied_events",
)

SAVE_LEAD_SQL = f"""
    INSERT INTO leads ({", ".join(LEAD_COLUMNS)}, updated_at)
    VALUES ({", ".join(f"${i}" for i in range(1, len(LEAD_COLUMNS) + 1))}, NOW())
    ON CONFLICT (id) DO UPDATE SET
        {", ".join(f"{c} = EXCLUDED.{c}" for c in LEAD_COLUMNS[1:])},
        updated_at = NOW()
    RETURNING *
"""

SETTINGS_SECTIONS = ("work_days", "processing_targets", "automation", "advanced")


def _translate_errors(fn):
    """Surface driver and connection failures as StoreError so callers can retry them."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"{fn.__name__}: {e}") from e
    return wrapper


def _lead(row) -> Lead:
    data = dict(row)
    data["applied_events"] = list(data.get("applied_events") or [])
    return Lead(**data)


def _lead_values(lead: Lead) -> list:
    data = lead.model_dump(mode="python")
    values = []
    for column in LEAD_COLUMNS:
        value = data[column]
        if hasattr(value, "value"):
            value = value.value
        values.append(value)
    return values


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # --- locks ---

    @asynccontextmanager
    async def advisory_lock(self, key: str):
        try:
            conn = await self._pool.acquire()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"advisory_lock: {e}") from e
        try:
            await conn.execute("SELECT pg_advisory_lock(hashtextextended($1, 0))", key)
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(hashtextextended($1, 0))", key)
        finally:
            await self._pool.release(conn)

    @asynccontextmanager
    async def try_advisory_lock(self, key: str):
        try:
            conn = await self._pool.acquire()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"try_advisory_lock: {e}") from e
        try:
            acquired = await conn.fetchval("SELECT pg_try_advisory_lock(hashtextextended($1, 0))", key)
            try:
                yield bool(acquired)
            finally:
                if acquired:
                    await conn.execute("SELECT pg_advisory_unlock(hashtextextended($1, 0))", key)
        finally:
            await self._pool.release(conn)

    # --- leads ---

    @_translate_errors
    async def get_lead(self, lead_id: UUID) -> Lead | None:
        row = await self._pool.fetchrow("SELECT * FROM leads WHERE id = $1", lead_id)
        return _lead(row) if row else None

    @_translate_errors
    async def list_lead_phones(self, tenant_id: str | None = None) -> list[LeadPhone]:
        rows = await self._pool.fetch(
            """
            SELECT id, phone, last_interaction FROM leads
            WHERE phone IS NOT NULL AND phone <> '' AND ($1::text IS NULL OR tenant_id = $1)
            """,
            tenant_id,
        )
        return [LeadPhone(**dict(r)) for r in rows]

    @_translate_errors
    async def find_leads_by_identifier(self, identifier: str, tenant_id: str | None = None) -> list[Lead]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM leads
            WHERE (lower(email) = lower($1) OR phone = $1) AND ($2::text IS NULL OR tenant_id = $2)
            ORDER BY last_interaction DESC NULLS LAST
            """,
            identifier.strip(),
            tenant_id,
        )
        return [_lead(r) for r in rows]

    @_translate_errors
    async def save_lead(self, lead: Lead) -> Lead:
        row = await self._pool.fetchrow(SAVE_LEAD_SQL, *_lead_values(lead))
        return _lead(row)

    @_translate_errors
    async def list_eligible_leads(self, tenant_id: str, queue_date: date) -> list[Lead]:
        # ISO dates compare correctly as text
        rows = await self._pool.fetch(
            """
            SELECT * FROM leads
            WHERE tenant_id = $1
              AND pipeline_status NOT IN ('converted', 'lost')
              AND (
                queue_status = 'idle'
                OR (queue_status = 'queued' AND COALESCE(queue_metadata->>'queued_for_date', '') < $2)
              )
            """,
            tenant_id,
            queue_date.isoformat(),
        )
        return [_lead(r) for r in rows]

    # --- conversations & messages ---

    @_translate_errors
    async def find_active_conversation(self, phone: str) -> Conversation | None:
        row = await self._pool.fetchrow(
            """
            SELECT * FROM conversations
            WHERE participant_phone = $1 AND status = 'active'
            ORDER BY started_at DESC
            LIMIT 1
            """,
            phone,
        )
        return Conversation(**dict(row)) if row else None

    @_translate_errors
    async def get_conversation(self, conversation_id: UUID) -> Conversation | None:
        row = await self._pool.fetchrow("SELECT * FROM conversations WHERE id = $1", conversation_id)
        return Conversation(**dict(row)) if row else None

    @_translate_errors
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        row = await self._pool.fetchrow(
            """
            INSERT INTO conversations (id, participant_phone, lead_id, status, started_at, last_message_at, message_count)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                lead_id = EXCLUDED.lead_id,
                status = EXCLUDED.status,
                last_message_at = EXCLUDED.last_message_at,
                message_count = EXCLUDED.message_count
            RETURNING *
            """,
            conversation.id,
            conversation.participant_phone,
            conversation.lead_id,
            conversation.status,
            conversation.started_at,
            conversation.last_message_at,
            conversation.message_count,
        )
        return Conversation(**dict(row))

    @_translate_errors
    async def insert_message(self, message: Message) -> tuple[Message, bool]:
        row = await self._pool.fetchrow(
            """
            INSERT INTO messages (id, provider_message_id, conversation_id, lead_id, sender_phone, receiver_phone,
                                  content, message_type, provider_type, direction, status, status_updated_at,
                                  sent_at, is_automated, raw)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            ON CONFLICT (provider_message_id) DO NOTHING
            RETURNING *
            """,
            message.id,
            message.provider_message_id,
            message.conversation_id,
            message.lead_id,
            message.sender_phone,
            message.receiver_phone,
            message.content,
            message.message_type,
            message.provider_type,
            message.direction,
            message.status,
            message.status_updated_at,
            message.sent_at,
            message.is_automated,
            message.raw,
        )
        if row:
            return Message(**dict(row)), True
        existing = await self._pool.fetchrow(
            "SELECT * FROM messages WHERE provider_message_id = $1", message.provider_message_id
        )
        return Message(**dict(existing)), False

    @_translate_errors
    async def get_message(self, provider_message_id: str) -> Message | None:
        row = await self._pool.fetchrow("SELECT * FROM messages WHERE provider_message_id = $1", provider_message_id)
        return Message(**dict(row)) if row else None

    @_translate_errors
    async def update_message_status(self, provider_message_id: str, status: str, status_at: datetime) -> Message | None:
        row = await self._pool.fetchrow(
            "UPDATE messages SET status = $2, status_updated_at = $3 WHERE provider_message_id = $1 RETURNING *",
            provider_message_id,
            status,
            status_at,
        )
        return Message(**dict(row)) if row else None

    @_translate_errors
    async def mark_message_processed(self, provider_message_id: str, processed_at: datetime) -> None:
        await self._pool.execute(
            "UPDATE messages SET processed_at = $2 WHERE provider_message_id = $1",
            provider_message_id, processed_at,
        )

    @_translate_errors
    async def count_inbound_messages(self, conversation_id: UUID) -> int:
        return await self._pool.fetchval(
            "SELECT count(*) FROM messages WHERE conversation_id = $1 AND direction = 'inbound'",
            conversation_id,
        )

    # --- change tracking ---

    @_translate_errors
    async def insert_system_change(self, change: SystemChange) -> tuple[SystemChange, bool]:
        row = await self._pool.fetchrow(
            """
            INSERT INTO system_changes (id, user_id, entity_type, entity_id, change_type, old_values, new_values,
                                        description, metadata, created_at, is_read)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (id) DO NOTHING
            RETURNING *
            """,
            change.id,
            change.user_id,
            change.entity_type,
            change.entity_id,
            change.change_type,
            change.old_values,
            change.new_values,
            change.description,
            change.metadata,
            change.created_at,
            change.is_read,
        )
        if row:
            return SystemChange(**dict(row)), True
        existing = await self._pool.fetchrow("SELECT * FROM system_changes WHERE id = $1", change.id)
        return SystemChange(**dict(existing)), False

    @_translate_errors
    async def list_system_changes(self, user_id: str, limit: int = 50, since: datetime | None = None) -> list[SystemChange]:
        if since:
            rows = await self._pool.fetch(
                """
                SELECT * FROM system_changes
                WHERE user_id = $1 AND created_at >= $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                user_id, since, limit,
            )
        else:
            rows = await self._pool.fetch(
                "SELECT * FROM system_changes WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
                user_id, limit,
            )
        return [SystemChange(**dict(r)) for r in rows]

    @_translate_errors
    async def mark_change_read(self, change_id: UUID, read_at: datetime) -> bool:
        result = await self._pool.execute(
            "UPDATE system_changes SET is_read = TRUE, read_at = $2 WHERE id = $1",
            change_id, read_at,
        )
        return result.endswith(" 1")

    @_translate_errors
    async def get_unread_aggregated(self, user_id: str, notification_type: str) -> AggregatedNotification | None:
        row = await self._pool.fetchrow(
            """
            SELECT * FROM aggregated_notifications
            WHERE user_id = $1 AND notification_type = $2 AND NOT is_read
            """,
            user_id, notification_type,
        )
        return AggregatedNotification(**dict(row)) if row else None

    @_translate_errors
    async def save_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification:
        row = await self._pool.fetchrow(
            """
            INSERT INTO aggregated_notifications (id, user_id, notification_type, count, title, description,
                                                  last_updated, created_at, is_read, read_at, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (id) DO UPDATE SET
                count = EXCLUDED.count,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                last_updated = EXCLUDED.last_updated,
                is_read = EXCLUDED.is_read,
                read_at = EXCLUDED.read_at,
                metadata = EXCLUDED.metadata
            RETURNING *
            """,
            notification.id,
            notification.user_id,
            notification.notification_type,
            notification.count,
            notification.title,
            notification.description,
            notification.last_updated,
            notification.created_at,
            notification.is_read,
            notification.read_at,
            notification.metadata,
        )
        return AggregatedNotification(**dict(row))

    @_translate_errors
    async def update_unread_aggregated(self, notification: AggregatedNotification) -> AggregatedNotification | None:
        row = await self._pool.fetchrow(
            """
            UPDATE aggregated_notifications
            SET count = $2, title = $3, description = $4, last_updated = $5, metadata = $6
            WHERE id = $1 AND NOT is_read
            RETURNING *
            """,
            notification.id,
            notification.count,
            notification.title,
            notification.description,
            notification.last_updated,
            notification.metadata,
        )
        return AggregatedNotification(**dict(row)) if row else None

    @_translate_errors
    async def list_unread_aggregated(self, user_id: str) -> list[AggregatedNotification]:
        rows = await self._pool.fetch(
            "SELECT * FROM aggregated_notifications WHERE user_id = $1 AND NOT is_read ORDER BY last_updated DESC",
            user_id,
        )
        return [AggregatedNotification(**dict(r)) for r in rows]

    @_translate_errors
    async def mark_aggregated_read(self, notification_id: UUID, read_at: datetime) -> AggregatedNotification | None:
        row = await self._pool.fetchrow(
            "UPDATE aggregated_notifications SET is_read = TRUE, read_at = $2 WHERE id = $1 RETURNING *",
            notification_id, read_at,
        )
        return AggregatedNotification(**dict(row)) if row else None

    @_translate_errors
    async def mark_all_aggregated_read(self, user_id: str, read_at: datetime) -> int:
        result = await self._pool.execute(
            "UPDATE aggregated_notifications SET is_read = TRUE, read_at = $2 WHERE user_id = $1 AND NOT is_read",
            user_id, read_at,
        )
        return int(result.split()[-1])

    @_translate_errors
    async def insert_notification(self, notification: Notification) -> Notification:
        row = await self._pool.fetchrow(
            """
            INSERT INTO notifications (id, user_id, title, message, type, action_url, metadata, read, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            notification.id,
            notification.user_id,
            notification.title,
            notification.message,
            notification.type,
            notification.action_url,
            notification.metadata,
            notification.read,
            notification.created_at,
        )
        return Notification(**dict(row))

    @_translate_errors
    async def list_notifications(self, user_id: str, limit: int = 50) -> list[Notification]:
        rows = await self._pool.fetch(
            "SELECT * FROM notifications WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
            user_id, limit,
        )
        return [Notification(**dict(r)) for r in rows]

    # --- queue ---

    @_translate_errors
    async def get_queue_settings(self, tenant_id: str) -> dict | None:
        row = await self._pool.fetchrow(
            f"SELECT {', '.join(SETTINGS_SECTIONS)} FROM queue_settings WHERE tenant_id = $1",
            tenant_id,
        )
        if not row:
            return None
        return {k: v for k, v in dict(row).items() if v is not None}

    @_translate_errors
    async def list_queue_tenants(self) -> list[str]:
        rows = await self._pool.fetch("SELECT tenant_id FROM queue_settings ORDER BY tenant_id")
        return [r["tenant_id"] for r in rows]

    @_translate_errors
    async def list_queue_assignments(self, tenant_id: str, queue_date: date) -> list[QueueAssignment]:
        rows = await self._pool.fetch(
            "SELECT * FROM queue_assignments WHERE tenant_id = $1 AND queue_date = $2 ORDER BY position",
            tenant_id, queue_date,
        )
        return [QueueAssignment(**dict(r)) for r in rows]

    @_translate_errors
    async def save_queue_assignments(self, assignments: list[QueueAssignment]) -> list[QueueAssignment]:
        saved = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for a in assignments:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO queue_assignments (tenant_id, queue_date, lead_id, position, priority_score,
                                                       selection_reason, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (tenant_id, queue_date, lead_id) DO NOTHING
                        RETURNING *
                        """,
                        a.tenant_id, a.queue_date, a.lead_id, a.position, a.priority_score,
                        a.selection_reason, a.created_at,
                    )
                    if row:
                        saved.append(QueueAssignment(**dict(row)))
        logger.info("Saved %d/%d queue assignments", len(saved), len(assignments))
        return saved
