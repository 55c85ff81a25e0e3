from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

# Delivery statuses only move forward along this order; "failed" may replace any non-read status.
DELIVERY_ORDER = {"pending_send": 0, "received": 0, "sent": 1, "delivered": 2, "read": 3}


class Conversation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    participant_phone: str
    lead_id: UUID | None = None
    status: str = "active"  # active, closed
    started_at: datetime
    last_message_at: datetime | None = None
    message_count: int = 0


class Message(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    provider_message_id: str  # idempotency key
    conversation_id: UUID | None = None
    lead_id: UUID | None = None
    sender_phone: str | None = None
    receiver_phone: str | None = None
    content: str = ""
    message_type: str = "text"  # text, media, system
    provider_type: str | None = None  # raw provider type: image, audio, document, ...
    direction: str = "inbound"  # inbound, outbound
    status: str = "received"  # received, pending_send, sent, delivered, read, failed
    status_updated_at: datetime | None = None
    sent_at: datetime
    is_automated: bool = False
    processed_at: datetime | None = None  # set once every inbound side effect is recorded
    raw: dict = Field(default_factory=dict)
