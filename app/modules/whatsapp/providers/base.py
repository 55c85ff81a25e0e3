"""
Base interface for WhatsApp providers.
Both Meta and Twilio implementations conform to this interface.
The rest of the app works with ChatBatch and never touches provider-specific formats.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Protocol

from app.models.events import MalformedPayloadError
from app.modules.security.signatures import SignatureVerifier

__all__ = ["MalformedPayloadError", "IncomingMessage", "StatusUpdate", "ChatBatch", "WhatsAppProvider"]


# Provider message types -> stored message type
MESSAGE_TYPE_MAP = {
    "text": "text",
    "image": "media",
    "audio": "media",
    "video": "media",
    "document": "media",
    "sticker": "media",
    "location": "system",
    "contacts": "system",
    "reaction": "system",
    "interactive": "system",
    "button": "system",
}


@dataclass
class IncomingMessage:
    """Provider-agnostic message format."""
    sender_phone: str
    message_id: str
    message_type: str  # provider type: "text", "audio", "image", "document", "location", ...
    timestamp: datetime
    receiver_phone: str | None = None
    text: str | None = None
    filename: str | None = None
    raw: dict = field(default_factory=dict)

    @property
    def content(self) -> str:
        if self.message_type == "text":
            return self.text or ""
        if self.message_type in ("image", "audio", "video"):
            return f"[{self.message_type.capitalize()} received]"
        if self.message_type == "document":
            return f"[Document: {self.filename or 'Unknown'}]"
        if self.message_type == "location":
            return "[Location shared]"
        return f"[{self.message_type} message]"

    @property
    def stored_type(self) -> str:
        return MESSAGE_TYPE_MAP.get(self.message_type, "system")


@dataclass
class StatusUpdate:
    """Delivery-status callback for a message we sent."""
    message_id: str
    status: str  # sent, delivered, read, failed
    timestamp: datetime
    recipient_phone: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class ChatBatch:
    messages: list[IncomingMessage] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)


class WhatsAppProvider(Protocol):
    """Interface that both Meta and Twilio providers implement."""

    def parse_webhook(self, body: bytes) -> ChatBatch:
        """Parse a raw webhook body. Raises MalformedPayloadError."""
        ...

    async def verify_webhook(self, hub_mode: str | None, hub_verify_token: str | None, hub_challenge: str | None) -> str | None:
        """Handle webhook verification (GET). Returns challenge string or None."""
        ...

    def signature_verifier(self) -> SignatureVerifier:
        ...

    def signature_params(self, body: bytes) -> Mapping[str, str] | None:
        """Form params that take part in the signature, if any."""
        ...

    async def send_text(self, to: str, text: str) -> dict:
        ...

    def sent_message_id(self, response: dict) -> str | None:
        """Provider id of a message accepted by send_text."""
        ...
