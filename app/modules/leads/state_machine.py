"""
Lead State Machine: legal transitions of a lead's composite status.

Transitions are pure: `apply_transition` takes a lead and a domain event and
returns the updated copy plus a delta describing what moved. Idempotency comes
from the lead row itself, which remembers the keys of recently applied events,
so the duplicate check and the state change land in one single-row write.

BANT heat:
    cold -> warm -> hot      external qualification promotions, forward only
    any  -> burning          MeetingScheduled only
    burning -> hot           MeetingCanceled, only while exactly burning
    no-show / reschedule     never change heat
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from app.models.events import (
    DomainEvent,
    MeetingCanceled,
    MeetingNoShow,
    MeetingRescheduled,
    MeetingScheduled,
    MessageReceived,
    ProcessingStateChanged,
    QualificationPromoted,
)
from app.models.lead import (
    STATUS_FIELDS,
    BantHeat,
    Lead,
    PipelineStatus,
    ProcessingState,
    QualificationState,
)

TRACKED_FIELDS = STATUS_FIELDS + (
    "interaction_count",
    "follow_up_count",
    "first_interaction",
    "last_interaction",
    "last_agent_processed_at",
    "requires_human_review",
    "metadata",
)

PROCESSING_TRANSITIONS = {
    ProcessingState.PENDING: {ProcessingState.ACTIVE},
    ProcessingState.ACTIVE: {ProcessingState.COMPLETED, ProcessingState.FAILED},
    ProcessingState.FAILED: {ProcessingState.PENDING, ProcessingState.ACTIVE},
    ProcessingState.COMPLETED: {ProcessingState.PENDING},
}


class InvalidTransitionError(Exception):
    """The requested change would leave the lead in a nonsensical state."""


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"  # event key already applied to this lead
    IGNORED = "ignored"  # guard did not hold, nothing to do


@dataclass
class LeadStateDelta:
    lead_id: UUID
    event_key: str
    outcome: Outcome
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    reason: str | None = None

    @property
    def status_changed(self) -> bool:
        return any(name in STATUS_FIELDS for name in self.changes)

    @property
    def old_values(self) -> dict:
        return {name: _plain(old) for name, (old, _) in self.changes.items()}

    @property
    def new_values(self) -> dict:
        return {name: _plain(new) for name, (_, new) in self.changes.items()}


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _later(a: datetime | None, b: datetime) -> datetime:
    if a is None:
        return b
    return max(a, b)


# --- handlers: mutate `lead` in place, return a reason string when the event does not apply ---

def _message_received(lead: Lead, event: MessageReceived, now: datetime) -> str | None:
    lead.interaction_count += 1
    if lead.first_interaction is None or event.received_at < lead.first_interaction:
        lead.first_interaction = event.received_at
    lead.last_interaction = _later(lead.last_interaction, event.received_at)
    if lead.qualification_state == QualificationState.NEW:
        lead.qualification_state = QualificationState.ENGAGED
    return None


def _qualification_promoted(lead: Lead, event: QualificationPromoted, now: datetime) -> str | None:
    if event.heat == BantHeat.BURNING:
        return "burning is reached only through a scheduled meeting"
    if event.heat <= lead.bant_heat:
        return f"heat {lead.bant_heat.value} is already at or above {event.heat.value}"

    lead.bant_heat = event.heat
    if event.heat >= BantHeat.HOT:
        if lead.pipeline_status in (PipelineStatus.NEW, PipelineStatus.CONTACTED):
            lead.pipeline_status = PipelineStatus.QUALIFIED
        if lead.qualification_state in (QualificationState.NEW, QualificationState.ENGAGED):
            lead.qualification_state = QualificationState.QUALIFIED
    elif lead.qualification_state == QualificationState.NEW:
        lead.qualification_state = QualificationState.ENGAGED
    return None


def _meeting_scheduled(lead: Lead, event: MeetingScheduled, now: datetime) -> str | None:
    if lead.bant_heat == BantHeat.BURNING:
        return "lead is already burning"

    lead.bant_heat = BantHeat.BURNING
    if lead.pipeline_status != PipelineStatus.CONVERTED:
        lead.pipeline_status = PipelineStatus.DEMO_SCHEDULED
    lead.qualification_state = QualificationState.MEETING_BOOKED
    lead.last_interaction = _later(lead.last_interaction, event.occurred_at)
    lead.metadata = {
        **lead.metadata,
        "calendly_meeting_scheduled": {
            "event_uri": event.event_uri,
            "scheduled_at": event.occurred_at.isoformat(),
            "meeting_start": event.start_time.isoformat() if event.start_time else None,
            "invitee_name": event.invitee_name,
        },
    }
    return None


def _meeting_canceled(lead: Lead, event: MeetingCanceled, now: datetime) -> str | None:
    if lead.bant_heat != BantHeat.BURNING:
        return f"heat is {lead.bant_heat.value}, not burning"

    lead.bant_heat = BantHeat.HOT
    if lead.pipeline_status != PipelineStatus.CONVERTED:
        lead.pipeline_status = PipelineStatus.QUALIFIED
    lead.qualification_state = QualificationState.QUALIFIED
    lead.last_interaction = _later(lead.last_interaction, event.occurred_at)
    lead.metadata = {
        **lead.metadata,
        "calendly_meeting_canceled": {
            "event_uri": event.event_uri,
            "canceled_at": event.occurred_at.isoformat(),
            "reason": event.reason,
        },
    }
    return None


def _meeting_no_show(lead: Lead, event: MeetingNoShow, now: datetime) -> str | None:
    lead.requires_human_review = True
    lead.follow_up_count += 1
    lead.metadata = {
        **lead.metadata,
        "calendly_meeting_no_show": {
            "event_uri": event.event_uri,
            "reported_at": event.occurred_at.isoformat(),
            "meeting_start": event.start_time.isoformat() if event.start_time else None,
        },
    }
    return None


def _meeting_rescheduled(lead: Lead, event: MeetingRescheduled, now: datetime) -> str | None:
    scheduled = dict(lead.metadata.get("calendly_meeting_scheduled") or {})
    scheduled.update({
        "event_uri": event.event_uri or scheduled.get("event_uri"),
        "meeting_start": event.start_time.isoformat() if event.start_time else scheduled.get("meeting_start"),
        "rescheduled_at": event.occurred_at.isoformat(),
    })
    lead.metadata = {**lead.metadata, "calendly_meeting_scheduled": scheduled}
    return None


def _processing_state_changed(lead: Lead, event: ProcessingStateChanged, now: datetime) -> str | None:
    if event.state == lead.processing_state:
        return f"processing state is already {event.state.value}"
    if event.state not in PROCESSING_TRANSITIONS[lead.processing_state]:
        raise InvalidTransitionError(
            f"processing state cannot move from {lead.processing_state.value} to {event.state.value}"
        )

    lead.processing_state = event.state
    if event.state == ProcessingState.COMPLETED:
        lead.last_agent_processed_at = now
    if event.state == ProcessingState.FAILED and event.error:
        lead.metadata = {**lead.metadata, "last_processing_error": event.error}
    return None


_HANDLERS = {
    MessageReceived: _message_received,
    QualificationPromoted: _qualification_promoted,
    MeetingScheduled: _meeting_scheduled,
    MeetingCanceled: _meeting_canceled,
    MeetingNoShow: _meeting_no_show,
    MeetingRescheduled: _meeting_rescheduled,
    ProcessingStateChanged: _processing_state_changed,
}


def validate_lead(lead: Lead) -> None:
    """Cross-check the status dimensions against each other."""
    if lead.bant_heat == BantHeat.BURNING and lead.pipeline_status not in (
        PipelineStatus.DEMO_SCHEDULED, PipelineStatus.CONVERTED,
    ):
        raise InvalidTransitionError(
            f"a burning lead must be demo_scheduled or converted, not {lead.pipeline_status.value}"
        )
    if lead.interaction_count < 0 or lead.follow_up_count < 0:
        raise InvalidTransitionError("lead counters cannot be negative")


def apply_transition(
    lead: Lead,
    event: DomainEvent,
    now: datetime | None = None,
    history: int = 100,
) -> tuple[Lead, LeadStateDelta]:
    """Apply `event` to `lead`. Returns (lead to persist, delta).

    Duplicates return the lead untouched. Ignored events return the lead with only
    the event key remembered, so a replay stays a duplicate.
    """
    now = now or datetime.now(timezone.utc)
    key = event.key

    if key in lead.applied_events:
        return lead, LeadStateDelta(lead_id=lead.id, event_key=key, outcome=Outcome.DUPLICATE)

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise InvalidTransitionError(f"no transition for {type(event).__name__}")

    updated = lead.model_copy(deep=True)
    reason = handler(updated, event, now)
    if reason is not None:
        ignored = lead.model_copy(deep=True)
        ignored.applied_events = (lead.applied_events + [key])[-history:]
        return ignored, LeadStateDelta(lead_id=lead.id, event_key=key, outcome=Outcome.IGNORED, reason=reason)

    validate_lead(updated)
    updated.applied_events = (lead.applied_events + [key])[-history:]

    changes = {}
    for name in TRACKED_FIELDS:
        before, after = getattr(lead, name), getattr(updated, name)
        if before != after:
            changes[name] = (before, after)

    return updated, LeadStateDelta(lead_id=lead.id, event_key=key, outcome=Outcome.APPLIED, changes=changes)
