"""
Calendly webhook parser: validates the raw body and builds a meeting domain event.

Accepted shapes:
    {"event": "invitee.created", "created_by": "...", "payload": {
        "invitee": {"name", "email", "phone", "uri"},
        "event": {"uri", "start_time"},
        "cancellation": {"reason"}}}

and the flat variant where invitee fields sit directly in `payload`
(`text_reminder_number` as the phone) with `scheduled_event` in place of `event`.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone

from app.models.events import (
    MalformedPayloadError,
    MeetingCanceled,
    MeetingDomainEvent,
    MeetingNoShow,
    MeetingRescheduled,
    MeetingScheduled,
)

EVENT_TYPES = {
    "invitee.created": MeetingScheduled,
    "invitee.canceled": MeetingCanceled,
    "invitee.no_show": MeetingNoShow,
    "invitee.rescheduled": MeetingRescheduled,
}


@dataclass
class CalendlyWebhook:
    event_name: str
    created_by: str | None
    event: MeetingDomainEvent | None  # None for event types we do not handle


def _parse_time(value, field_name: str) -> datetime | None:
    if not value:
        return None
    if not isinstance(value, str):
        raise MalformedPayloadError(f"{field_name} must be an ISO timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedPayloadError(f"invalid {field_name}: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _section(data: dict, *names: str) -> dict:
    for name in names:
        value = data.get(name)
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            return {"uri": value}
    return {}


def parse_webhook(body: bytes, received_at: datetime | None = None) -> CalendlyWebhook:
    """Raises MalformedPayloadError for invalid JSON or missing required fields."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedPayloadError("payload must be a JSON object")

    event_name = data.get("event")
    if not isinstance(event_name, str) or not event_name:
        raise MalformedPayloadError("missing event")
    created_by = data.get("created_by") if isinstance(data.get("created_by"), str) else None

    event_cls = EVENT_TYPES.get(event_name)
    if event_cls is None:
        return CalendlyWebhook(event_name=event_name, created_by=created_by, event=None)

    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise MalformedPayloadError("missing payload")

    invitee = payload["invitee"] if isinstance(payload.get("invitee"), dict) else payload
    invitee_uri = invitee.get("uri")
    if invitee is payload and isinstance(payload.get("invitee"), str):
        invitee_uri = payload["invitee"]
    meeting = _section(payload, "event", "scheduled_event")

    email = invitee.get("email")
    phone = invitee.get("phone") or invitee.get("text_reminder_number")
    if not email and not phone:
        raise MalformedPayloadError("invitee has neither email nor phone")

    event_id = invitee_uri or meeting.get("uri")
    if not event_id:
        raise MalformedPayloadError("missing invitee or event uri")

    occurred_at = (
        _parse_time(data.get("created_at"), "created_at")
        or received_at
        or datetime.now(timezone.utc)
    )
    fields = dict(
        event_id=event_id,
        invitee_name=invitee.get("name"),
        invitee_email=email,
        invitee_phone=phone,
        event_uri=meeting.get("uri"),
        start_time=_parse_time(meeting.get("start_time"), "start_time"),
        user_id=created_by,
        occurred_at=occurred_at,
    )
    if event_cls is MeetingCanceled:
        cancellation = _section(payload, "cancellation") or _section(invitee, "cancellation")
        fields["reason"] = cancellation.get("reason")

    return CalendlyWebhook(event_name=event_name, created_by=created_by, event=event_cls(**fields))
