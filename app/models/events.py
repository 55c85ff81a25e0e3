"""
Domain events: the only shape in which webhook data reaches the lead state machine.
Webhook parsers build these at the boundary; nothing downstream reads raw payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from app.models.lead import BantHeat, ProcessingState


class MalformedPayloadError(Exception):
    """Webhook body could not be parsed or lacks required fields."""


@dataclass(frozen=True)
class MessageReceived:
    event_id: str  # provider message id
    phone: str
    received_at: datetime

    @property
    def key(self) -> str:
        return f"chat:message:{self.event_id}"


@dataclass(frozen=True)
class QualificationPromoted:
    event_id: str
    heat: BantHeat
    source: str = "bant"

    @property
    def key(self) -> str:
        return f"{self.source}:promote:{self.event_id}"


@dataclass(frozen=True)
class MeetingEvent:
    """Fields shared by every calendar booking callback."""
    event_id: str  # invitee uri, or event uri when the invitee has none
    invitee_name: str | None
    invitee_email: str | None
    invitee_phone: str | None
    event_uri: str | None
    start_time: datetime | None
    user_id: str | None  # calendar owner to notify
    occurred_at: datetime

    kind = "meeting"

    @property
    def key(self) -> str:
        return f"calendly:{self.kind}:{self.event_id}"


@dataclass(frozen=True)
class MeetingScheduled(MeetingEvent):
    kind = "scheduled"


@dataclass(frozen=True)
class MeetingCanceled(MeetingEvent):
    kind = "canceled"
    reason: str | None = None


@dataclass(frozen=True)
class MeetingNoShow(MeetingEvent):
    kind = "no_show"


@dataclass(frozen=True)
class MeetingRescheduled(MeetingEvent):
    kind = "rescheduled"


@dataclass(frozen=True)
class ProcessingStateChanged:
    event_id: str
    state: ProcessingState
    error: str | None = None
    details: dict = field(default_factory=dict, hash=False, compare=False)

    @property
    def key(self) -> str:
        return f"processing:{self.state.value}:{self.event_id}"


MeetingDomainEvent = Union[MeetingScheduled, MeetingCanceled, MeetingNoShow, MeetingRescheduled]

DomainEvent = Union[
    MessageReceived,
    QualificationPromoted,
    MeetingScheduled,
    MeetingCanceled,
    MeetingNoShow,
    MeetingRescheduled,
    ProcessingStateChanged,
]
