"""Meta WhatsApp Cloud API provider."""

import json
from datetime import datetime, timezone

import httpx

from app.config import get_settings
from app.modules.security.signatures import HmacSha256Verifier
from app.modules.whatsapp.providers.base import ChatBatch, IncomingMessage, MalformedPayloadError, StatusUpdate

WA_API_BASE = "https://graph.facebook.com/v21.0"


def _timestamp(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _object(container: dict, key: str, what: str) -> dict:
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedPayloadError(f"{what} is not an object")
    return value


def _text(container: dict, key: str, what: str) -> str | None:
    value = container.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedPayloadError(f"{what} is not a string")
    return value


def _items(container: dict, key: str, what: str) -> list[dict]:
    """Objects of an optional list field; anything else in the payload's shape is malformed."""
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise MalformedPayloadError(f"{what} is not a list of objects")
    return value


def parse_webhook(body: bytes) -> ChatBatch:
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"invalid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("entry"), list):
        raise MalformedPayloadError("payload has no entry list")

    batch = ChatBatch()
    for entry in _items(data, "entry", "entry"):
        for change in _items(entry, "changes", "entry changes"):
            value = _object(change, "value", "change value")
            business_phone = _text(_object(value, "metadata", "value metadata"), "display_phone_number", "business number")

            for msg in _items(value, "messages", "messages"):
                if not msg.get("id") or not msg.get("from"):
                    raise MalformedPayloadError("message without id or sender")
                message_type = _text(msg, "type", "message type") or "text"
                incoming = IncomingMessage(
                    sender_phone=str(msg["from"]),
                    message_id=str(msg["id"]),
                    message_type=message_type,
                    timestamp=_timestamp(msg.get("timestamp")),
                    receiver_phone=business_phone,
                    raw=msg,
                )
                if message_type == "text":
                    incoming.text = _text(_object(msg, "text", "message text"), "body", "message body")
                elif message_type == "document":
                    incoming.filename = _text(_object(msg, "document", "message document"), "filename", "document filename")
                batch.messages.append(incoming)

            for status in _items(value, "statuses", "statuses"):
                if not status.get("id") or not status.get("status"):
                    raise MalformedPayloadError("status without id or value")
                batch.statuses.append(StatusUpdate(
                    message_id=str(status["id"]),
                    status=status["status"],
                    timestamp=_timestamp(status.get("timestamp")),
                    recipient_phone=status.get("recipient_id"),
                    raw=status,
                ))

    return batch


async def verify_webhook(
    hub_mode: str | None,
    hub_verify_token: str | None,
    hub_challenge: str | None,
) -> str | None:
    settings = get_settings()
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        return hub_challenge
    return None


def signature_verifier() -> HmacSha256Verifier:
    return HmacSha256Verifier(get_settings().whatsapp_app_secret)


def signature_params(body: bytes) -> None:
    return None


async def send_text(to: str, text: str) -> dict:
    settings = get_settings()
    url = f"{WA_API_BASE}/{settings.whatsapp_phone_number_id}/messages"
    headers = {"Authorization": f"Bearer {settings.whatsapp_token}"}
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": text},
    }
    async with httpx.AsyncClient() as client:
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


def sent_message_id(response: dict) -> str | None:
    messages = response.get("messages") or [{}]
    return messages[0].get("id")
