"""Twilio WhatsApp provider (form-encoded callbacks)."""

from datetime import datetime, timezone
from urllib.parse import parse_qsl

import httpx

from app.config import get_settings
from app.modules.security.signatures import TwilioVerifier
from app.modules.whatsapp.providers.base import ChatBatch, IncomingMessage, MalformedPayloadError, StatusUpdate

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

# Twilio reports these for messages we sent; "received" arrives with inbound messages
STATUS_VALUES = {"queued", "sending", "sent", "delivered", "read", "failed", "undelivered"}


def _clean_phone(phone: str) -> str:
    """Strip 'whatsapp:' prefix and '+' from Twilio phone format."""
    return phone.replace("whatsapp:", "").replace("+", "")


def _form(body: bytes) -> dict:
    try:
        return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(f"invalid form body: {e}")


def parse_webhook(body: bytes) -> ChatBatch:
    data = _form(body)
    message_id = data.get("MessageSid") or data.get("SmsSid")
    if not message_id:
        raise MalformedPayloadError("missing MessageSid")

    now = datetime.now(timezone.utc)
    status = data.get("MessageStatus") or data.get("SmsStatus")

    # Status callbacks carry no Body; inbound messages always do (possibly empty with media)
    if status in STATUS_VALUES and "Body" not in data:
        mapped = {"undelivered": "failed", "queued": "sent", "sending": "sent"}.get(status, status)
        return ChatBatch(statuses=[StatusUpdate(
            message_id=message_id,
            status=mapped,
            timestamp=now,
            recipient_phone=_clean_phone(data.get("To", "")) or None,
            raw=data,
        )])

    sender = _clean_phone(data.get("From", ""))
    if not sender:
        raise MalformedPayloadError("missing From")

    try:
        num_media = int(data.get("NumMedia", "0") or 0)
    except ValueError:
        raise MalformedPayloadError(f"invalid NumMedia {data.get('NumMedia')!r}")

    message_type = "text"
    if num_media > 0:
        content_type = data.get("MediaContentType0", "")
        if "audio" in content_type:
            message_type = "audio"
        elif "image" in content_type:
            message_type = "image"
        elif "video" in content_type:
            message_type = "video"
        else:
            message_type = "document"
    elif data.get("Latitude") and data.get("Longitude"):
        message_type = "location"

    return ChatBatch(messages=[IncomingMessage(
        sender_phone=sender,
        message_id=message_id,
        message_type=message_type,
        timestamp=now,
        receiver_phone=_clean_phone(data.get("To", "")) or None,
        text=data.get("Body") if message_type == "text" else None,
        raw=data,
    )])


async def verify_webhook(
    hub_mode: str | None,
    hub_verify_token: str | None,
    hub_challenge: str | None,
) -> str | None:
    # Twilio doesn't use GET verification; it validates via signature.
    return None


def signature_verifier() -> TwilioVerifier:
    return TwilioVerifier(get_settings().twilio_auth_token)


def signature_params(body: bytes) -> dict:
    return _form(body)


async def send_text(to: str, text: str) -> dict:
    settings = get_settings()
    url = f"{TWILIO_API_BASE}/Accounts/{settings.twilio_account_sid}/Messages.json"
    auth = (settings.twilio_account_sid, settings.twilio_auth_token)

    payload = {
        "From": f"whatsapp:{settings.twilio_whatsapp_number}",
        "To": f"whatsapp:+{to}",
        "Body": text,
    }
    async with httpx.AsyncClient() as client:
        response = await client.post(url, data=payload, auth=auth)
        response.raise_for_status()
        return response.json()


def sent_message_id(response: dict) -> str | None:
    return response.get("sid")
