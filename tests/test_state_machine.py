from datetime import datetime, timezone

import pytest

from app.models.events import (
    MeetingCanceled,
    MeetingNoShow,
    MeetingRescheduled,
    MeetingScheduled,
    MessageReceived,
    ProcessingStateChanged,
    QualificationPromoted,
)
from app.models.lead import BantHeat, Lead, PipelineStatus, ProcessingState, QualificationState
from app.modules.leads.state_machine import InvalidTransitionError, Outcome, apply_transition, validate_lead

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
MEETING_START = datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc)


def meeting(cls, event_id="inv-1", **extra):
    return cls(
        event_id=event_id,
        invitee_name="Dana Levi",
        invitee_email="dana@example.com",
        invitee_phone="+972501234567",
        event_uri="https://api.calendly.com/scheduled_events/EV1",
        start_time=MEETING_START,
        user_id="tenant-1",
        occurred_at=NOW,
        **extra,
    )


def hot_lead(**fields):
    return Lead(
        tenant_id="tenant-1",
        phone="0501234567",
        bant_heat=BantHeat.HOT,
        pipeline_status=PipelineStatus.QUALIFIED,
        qualification_state=QualificationState.QUALIFIED,
        metadata={"source": "landing-page"},
        **fields,
    )


def test_scheduled_meeting_makes_lead_burning():
    lead, delta = apply_transition(hot_lead(), meeting(MeetingScheduled), now=NOW)

    assert delta.outcome == Outcome.APPLIED
    assert lead.bant_heat == BantHeat.BURNING
    assert lead.pipeline_status == PipelineStatus.DEMO_SCHEDULED
    assert lead.qualification_state == QualificationState.MEETING_BOOKED
    assert lead.last_interaction == NOW
    assert lead.metadata["source"] == "landing-page"
    assert lead.metadata["calendly_meeting_scheduled"]["event_uri"].endswith("/EV1")
    assert delta.changes["bant_heat"] == (BantHeat.HOT, BantHeat.BURNING)
    assert delta.status_changed
    assert delta.new_values["bant_heat"] == "burning"


def test_replaying_the_same_event_is_a_duplicate():
    lead, _ = apply_transition(hot_lead(), meeting(MeetingScheduled), now=NOW)
    again, delta = apply_transition(lead, meeting(MeetingScheduled), now=NOW)

    assert delta.outcome == Outcome.DUPLICATE
    assert again == lead


def test_second_meeting_for_burning_lead_is_ignored_without_side_effects():
    lead, _ = apply_transition(hot_lead(), meeting(MeetingScheduled, event_id="inv-1"), now=NOW)
    again, delta = apply_transition(lead, meeting(MeetingScheduled, event_id="inv-2"), now=NOW)

    assert delta.outcome == Outcome.IGNORED
    assert delta.changes == {}
    assert again.bant_heat == BantHeat.BURNING
    assert again.interaction_count == lead.interaction_count
    assert "calendly:scheduled:inv-2" in again.applied_events


def test_cancel_demotes_burning_to_hot():
    lead, _ = apply_transition(hot_lead(), meeting(MeetingScheduled), now=NOW)
    lead, delta = apply_transition(lead, meeting(MeetingCanceled, reason="conflict"), now=NOW)

    assert delta.outcome == Outcome.APPLIED
    assert lead.bant_heat == BantHeat.HOT
    assert lead.pipeline_status == PipelineStatus.QUALIFIED
    assert lead.metadata["calendly_meeting_canceled"]["reason"] == "conflict"
    assert "calendly_meeting_scheduled" in lead.metadata


@pytest.mark.parametrize("heat", [BantHeat.COLD, BantHeat.WARM, BantHeat.HOT])
def test_cancel_is_a_noop_unless_burning(heat):
    lead = Lead(tenant_id="tenant-1", bant_heat=heat)
    updated, delta = apply_transition(lead, meeting(MeetingCanceled), now=NOW)

    assert delta.outcome == Outcome.IGNORED
    assert updated.bant_heat == heat
    assert updated.pipeline_status == lead.pipeline_status


def test_no_show_flags_review_without_changing_heat():
    lead, _ = apply_transition(hot_lead(), meeting(MeetingScheduled), now=NOW)
    lead, delta = apply_transition(lead, meeting(MeetingNoShow), now=NOW)

    assert delta.outcome == Outcome.APPLIED
    assert lead.bant_heat == BantHeat.BURNING
    assert lead.requires_human_review is True
    assert lead.follow_up_count == 1
    assert not delta.status_changed


def test_reschedule_only_moves_meeting_time():
    lead, _ = apply_transition(hot_lead(), meeting(MeetingScheduled), now=NOW)
    new_start = datetime(2026, 10, 22, 15, 0, tzinfo=timezone.utc)
    moved = MeetingRescheduled(
        event_id="inv-1", invitee_name="Dana Levi", invitee_email="dana@example.com",
        invitee_phone=None, event_uri="https://api.calendly.com/scheduled_events/EV1",
        start_time=new_start, user_id="tenant-1", occurred_at=NOW,
    )
    updated, delta = apply_transition(lead, moved, now=NOW)

    assert delta.outcome == Outcome.APPLIED
    assert updated.bant_heat == lead.bant_heat
    assert updated.pipeline_status == lead.pipeline_status
    assert updated.metadata["calendly_meeting_scheduled"]["meeting_start"] == new_start.isoformat()
    assert updated.metadata["calendly_meeting_scheduled"]["invitee_name"] == "Dana Levi"
    assert list(delta.changes) == ["metadata"]


def test_message_received_counts_interactions():
    lead = Lead(tenant_id="tenant-1")
    first = datetime(2026, 10, 1, tzinfo=timezone.utc)
    lead, _ = apply_transition(lead, MessageReceived(event_id="wamid.1", phone="972501234567", received_at=NOW), now=NOW)
    lead, _ = apply_transition(lead, MessageReceived(event_id="wamid.0", phone="972501234567", received_at=first), now=NOW)

    assert lead.interaction_count == 2
    assert lead.first_interaction == first
    assert lead.last_interaction == NOW
    assert lead.qualification_state == QualificationState.ENGAGED


def test_qualification_promotions_only_move_forward():
    lead = Lead(tenant_id="tenant-1")
    lead, delta = apply_transition(lead, QualificationPromoted(event_id="q1", heat=BantHeat.WARM), now=NOW)
    assert delta.outcome == Outcome.APPLIED
    assert lead.bant_heat == BantHeat.WARM

    lead, delta = apply_transition(lead, QualificationPromoted(event_id="q2", heat=BantHeat.HOT), now=NOW)
    assert lead.bant_heat == BantHeat.HOT
    assert lead.pipeline_status == PipelineStatus.QUALIFIED

    lead, delta = apply_transition(lead, QualificationPromoted(event_id="q3", heat=BantHeat.WARM), now=NOW)
    assert delta.outcome == Outcome.IGNORED
    assert lead.bant_heat == BantHeat.HOT


def test_promotion_never_reaches_burning():
    lead, delta = apply_transition(hot_lead(), QualificationPromoted(event_id="q1", heat=BantHeat.BURNING), now=NOW)
    assert delta.outcome == Outcome.IGNORED
    assert lead.bant_heat == BantHeat.HOT


def test_processing_state_transitions():
    lead = Lead(tenant_id="tenant-1")
    lead, _ = apply_transition(lead, ProcessingStateChanged(event_id="run-1", state=ProcessingState.ACTIVE), now=NOW)
    lead, delta = apply_transition(lead, ProcessingStateChanged(event_id="run-1", state=ProcessingState.COMPLETED), now=NOW)

    assert delta.outcome == Outcome.APPLIED
    assert lead.processing_state == ProcessingState.COMPLETED
    assert lead.last_agent_processed_at == NOW


def test_processing_state_rejects_skipping_active():
    lead = Lead(tenant_id="tenant-1")
    with pytest.raises(InvalidTransitionError):
        apply_transition(lead, ProcessingStateChanged(event_id="run-1", state=ProcessingState.COMPLETED), now=NOW)


def test_applied_event_history_is_bounded():
    lead = Lead(tenant_id="tenant-1")
    for i in range(5):
        lead, _ = apply_transition(
            lead, MessageReceived(event_id=f"wamid.{i}", phone="1", received_at=NOW), now=NOW, history=3,
        )
    assert lead.applied_events == ["chat:message:wamid.2", "chat:message:wamid.3", "chat:message:wamid.4"]


def test_validate_lead_rejects_burning_outside_demo():
    lead = Lead(tenant_id="tenant-1", bant_heat=BantHeat.BURNING, pipeline_status=PipelineStatus.NEW)
    with pytest.raises(InvalidTransitionError):
        validate_lead(lead)
