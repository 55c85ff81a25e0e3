"""
Chat Message Processor: turns a parsed WhatsApp batch into stored messages,
conversation updates, lead events and tracked changes.

Items of one batch run concurrently (bounded by `batch_concurrency`); each item
fails alone and is reported in the result's `errors`.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from uuid import NAMESPACE_URL, UUID, uuid5

import httpx

from app.config import get_settings
from app.models.conversation import DELIVERY_ORDER, Conversation, Message
from app.models.events import MessageReceived
from app.modules.changes.tracker import ChangeTracker
from app.modules.correlation.phone import normalize_phone
from app.modules.leads.service import LeadEngine
from app.modules.leads.state_machine import Outcome
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries
from app.modules.whatsapp.providers.base import ChatBatch, IncomingMessage, StatusUpdate
from app.modules.whatsapp.sender import get_provider
from app.modules.whatsapp.templates import automated_reply

logger = logging.getLogger(__name__)


@dataclass
class ChatProcessingResult:
    processed_messages: int = 0
    processed_statuses: int = 0
    duplicates: int = 0
    unmatched: int = 0
    lead_updates: int = 0
    auto_replies: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"success": self.success, **asdict(self)}


def status_advances(current: str, new: str) -> bool:
    """Delivery statuses only move forward; failed may replace anything but read."""
    if current == new or current == "failed":
        return False
    if new == "failed":
        return current != "read"
    if new not in DELIVERY_ORDER:
        return False
    return DELIVERY_ORDER[new] > DELIVERY_ORDER.get(current, 0)


class ChatMessageProcessor:
    def __init__(self, store: LeadStore, engine: LeadEngine | None = None, provider=None):
        self.store = store
        self.tracker = engine.tracker if engine else ChangeTracker(store)
        self.engine = engine or LeadEngine(store, self.tracker)
        self.provider = provider or get_provider()

    async def handle(self, batch: ChatBatch) -> ChatProcessingResult:
        settings = get_settings()
        result = ChatProcessingResult()
        semaphore = asyncio.Semaphore(max(1, settings.batch_concurrency))

        async def run(kind: str, item_id: str, coro):
            async with semaphore:
                try:
                    await coro
                except Exception as e:
                    logger.exception("Error processing %s %s: %s", kind, item_id, e)
                    result.errors.append(f"{kind} {item_id}: {e}")

        await asyncio.gather(
            *(run("message", m.message_id, self.process_message(m, result)) for m in batch.messages),
            *(run("status", s.message_id, self.process_status(s, result)) for s in batch.statuses),
        )
        return result

    # ===== INBOUND MESSAGES =====

    async def process_message(self, incoming: IncomingMessage, result: ChatProcessingResult) -> None:
        """Store one inbound message and apply its side effects.

        The message row is written first and stamped processed last; a delivery
        that finds the row unstamped resumes the remaining steps, each of which
        is safe to repeat.
        """
        settings = get_settings()
        phone = normalize_phone(incoming.sender_phone)
        tenant_id = settings.whatsapp_number_tenants.get(normalize_phone(incoming.receiver_phone))

        resolution = await self.engine.resolve_lead(incoming.sender_phone, tenant_id=tenant_id)
        lead_id = resolution.lead_id if resolution else None

        async with self.store.advisory_lock(f"conversation:{phone}"):
            existing = await with_retries(
                lambda: self.store.get_message(incoming.message_id),
                f"get message {incoming.message_id}",
            )
            if existing and existing.processed_at is not None:
                logger.info("Duplicate delivery of message %s", incoming.message_id)
                result.duplicates += 1
                return

            conversation = None
            if existing:
                logger.info("Resuming unfinished processing of message %s", incoming.message_id)
                lead_id = existing.lead_id or lead_id
                if existing.conversation_id:
                    conversation = await with_retries(
                        lambda: self.store.get_conversation(existing.conversation_id),
                        f"get conversation {existing.conversation_id}",
                    )
            if conversation is None:
                conversation = await with_retries(
                    lambda: self.store.find_active_conversation(phone),
                    f"find conversation for {phone}",
                )
            if conversation is None:
                conversation = Conversation(participant_phone=phone, lead_id=lead_id, started_at=incoming.timestamp)
                logger.info("Opening conversation %s for %s", conversation.id, phone)
                # Messages reference the conversation row
                await with_retries(
                    lambda: self.store.save_conversation(conversation),
                    f"save conversation {conversation.id}",
                )

            message = existing
            if message is None:
                message = Message(
                    provider_message_id=incoming.message_id,
                    conversation_id=conversation.id,
                    lead_id=lead_id,
                    sender_phone=phone,
                    receiver_phone=normalize_phone(incoming.receiver_phone) or None,
                    content=incoming.content,
                    message_type=incoming.stored_type,
                    provider_type=incoming.message_type,
                    direction="inbound",
                    status="received",
                    sent_at=incoming.timestamp,
                    raw=incoming.raw,
                )
                await with_retries(
                    lambda: self.store.insert_message(message),
                    f"insert message {incoming.message_id}",
                )

            conversation.message_count = await with_retries(
                lambda: self.store.count_inbound_messages(conversation.id),
                f"count messages in {conversation.id}",
            )
            reply = None
            if settings.auto_reply_enabled and incoming.message_type == "text":
                reply = automated_reply(incoming.text, conversation.message_count - 1)

            if conversation.last_message_at is None or incoming.timestamp > conversation.last_message_at:
                conversation.last_message_at = incoming.timestamp
            if conversation.lead_id is None:
                conversation.lead_id = lead_id
            await with_retries(
                lambda: self.store.save_conversation(conversation),
                f"save conversation {conversation.id}",
            )

            logger.info(
                "Incoming [%s] from %s: type=%s text=%s",
                settings.whatsapp_provider, phone, incoming.message_type, message.content[:80],
            )

            user_id = settings.system_user_id
            if lead_id is not None:
                delta = await self.engine.apply_event(
                    lead_id,
                    MessageReceived(event_id=incoming.message_id, phone=phone, received_at=incoming.timestamp),
                    source="whatsapp",
                )
                if delta.outcome == Outcome.APPLIED:
                    result.lead_updates += 1
                user_id = await self._actor(lead_id)
            else:
                logger.info("No lead matches %s; message %s stored without a lead", phone, incoming.message_id)
                result.unmatched += 1

            await self.tracker.track_message_change(
                user_id, incoming.message_id, "created",
                new_values={"direction": "inbound", "type": message.message_type, "from": phone},
                change_id=uuid5(NAMESPACE_URL, f"message:{incoming.message_id}:created"),
            )

            if reply:
                await self._send_reply(conversation, incoming, reply, lead_id)
                result.auto_replies += 1

            await with_retries(
                lambda: self.store.mark_message_processed(incoming.message_id, datetime.now(timezone.utc)),
                f"mark message {incoming.message_id} processed",
            )

        result.processed_messages += 1

    async def _send_reply(self, conversation: Conversation, incoming: IncomingMessage, text: str,
                          lead_id: UUID | None) -> Message:
        """Store the automated reply, dispatching it first when sending is enabled."""
        settings = get_settings()
        now = datetime.now(timezone.utc)
        reply = Message(
            provider_message_id=f"auto_{incoming.message_id}",
            conversation_id=conversation.id,
            lead_id=lead_id,
            sender_phone=normalize_phone(incoming.receiver_phone) or None,
            receiver_phone=conversation.participant_phone,
            content=text,
            message_type="text",
            provider_type="text",
            direction="outbound",
            status="pending_send",
            sent_at=now,
            is_automated=True,
        )

        if settings.auto_reply_send:
            try:
                response = await self.provider.send_text(conversation.participant_phone, text)
                reply.provider_message_id = self.provider.sent_message_id(response) or reply.provider_message_id
                reply.status = "sent"
                reply.raw = response
            except httpx.HTTPError as e:
                logger.error("Failed to send automated reply to %s: %s", conversation.participant_phone, e)
                reply.status = "failed"
            reply.status_updated_at = datetime.now(timezone.utc)

        stored, _ = await with_retries(
            lambda: self.store.insert_message(reply),
            f"store automated reply for {incoming.message_id}",
        )
        logger.info("Automated reply %s (%s) for message %s", stored.provider_message_id, stored.status, incoming.message_id)
        return stored

    # ===== DELIVERY STATUSES =====

    async def process_status(self, update: StatusUpdate, result: ChatProcessingResult) -> None:
        async with self.store.advisory_lock(f"message:{update.message_id}"):
            message = await with_retries(
                lambda: self.store.get_message(update.message_id),
                f"get message {update.message_id}",
            )
            if message is None:
                logger.info("Status %s for unknown message %s", update.status, update.message_id)
                result.unmatched += 1
                return

            if not status_advances(message.status, update.status):
                logger.info(
                    "Ignoring stale status %s for message %s (currently %s)",
                    update.status, update.message_id, message.status,
                )
                return

            await with_retries(
                lambda: self.store.update_message_status(update.message_id, update.status, update.timestamp),
                f"update status of {update.message_id}",
            )

        result.processed_statuses += 1
        user_id = await self._actor(message.lead_id) if message.lead_id else get_settings().system_user_id
        await self.tracker.track_message_change(
            user_id, update.message_id, "status_changed",
            old_values={"status": message.status}, new_values={"status": update.status},
        )

    async def _actor(self, lead_id: UUID) -> str:
        lead = await self.engine.get_lead(lead_id)
        return lead.tenant_id if lead else get_settings().system_user_id
