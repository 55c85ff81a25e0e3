"""
Meeting Event Processor: applies Calendly booking events to leads and notifies
the calendar owner.
"""

import logging
from dataclasses import asdict, dataclass, field

from app.config import get_settings
from app.models.events import MeetingCanceled, MeetingEvent, MeetingNoShow, MeetingRescheduled, MeetingScheduled
from app.modules.calendly.parser import CalendlyWebhook
from app.modules.leads.service import LeadEngine
from app.modules.leads.state_machine import LeadStateDelta, Outcome
from app.modules.notifications.sink import NotificationSink, StoreNotificationSink
from app.modules.store.base import LeadStore

logger = logging.getLogger(__name__)


@dataclass
class MeetingProcessingResult:
    event_processed: str | None = None
    processed: int = 0
    notifications_sent: int = 0
    lead_updates: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"success": self.success, **asdict(self)}


# event class -> (title, severity, priority, change type, notification event type)
NOTIFICATION_STYLES = {
    MeetingScheduled: ("🔥 BANT Meeting Scheduled!", "success", "high", "created", "meeting_scheduled"),
    MeetingCanceled: ("❌ Meeting Canceled", "warning", "medium", "deleted", "meeting_canceled"),
    MeetingNoShow: ("⚠️ Meeting No-Show", "error", "urgent", "status_changed", "meeting_no_show"),
    MeetingRescheduled: ("📅 Meeting Rescheduled", "info", "medium", "updated", "meeting_rescheduled"),
}


def _meeting_date(event: MeetingEvent) -> str:
    return event.start_time.date().isoformat() if event.start_time else "an upcoming date"


def notification_message(event: MeetingEvent) -> str:
    name = event.invitee_name or event.invitee_email or "The invitee"
    if isinstance(event, MeetingScheduled):
        return f"{name} scheduled a meeting for {_meeting_date(event)}. Lead automatically promoted to BURNING status."
    if isinstance(event, MeetingCanceled):
        return f"{name} canceled their meeting. Follow up recommended."
    if isinstance(event, MeetingNoShow):
        return f"{name} was a no-show for their meeting. Immediate follow-up required."
    return f"{name} rescheduled their meeting to {_meeting_date(event)}."


def action_url(event: MeetingEvent) -> str:
    if isinstance(event, (MeetingScheduled, MeetingRescheduled)) and event.event_uri:
        return f"/calendar?event={event.event_uri.rstrip('/').split('/')[-1]}"
    return f"/leads?search={event.invitee_email or event.invitee_phone or ''}"


class MeetingEventProcessor:
    def __init__(self, store: LeadStore, engine: LeadEngine | None = None, sink: NotificationSink | None = None):
        self.store = store
        self.engine = engine or LeadEngine(store)
        self.tracker = self.engine.tracker
        self.sink = sink or StoreNotificationSink(store)

    async def handle(self, webhook: CalendlyWebhook) -> MeetingProcessingResult:
        result = MeetingProcessingResult(event_processed=webhook.event_name)
        event = webhook.event
        if event is None:
            logger.info("Unhandled Calendly event: %s", webhook.event_name)
            result.errors.append(f"Unhandled event type: {webhook.event_name}")
            return result

        logger.info("Processing %s for %s (%s)", webhook.event_name, event.invitee_name, event.invitee_email)
        try:
            await self._process(event, result)
        except Exception as e:
            logger.exception("Error processing %s %s: %s", webhook.event_name, event.event_id, e)
            result.errors.append(f"{webhook.event_name} {event.event_id}: {e}")
        return result

    async def _process(self, event: MeetingEvent, result: MeetingProcessingResult) -> None:
        tenant_id = get_settings().calendly_owner_tenants.get(event.user_id or "")
        # Email doubles as the raw phone identifier when the invitee left no number
        resolution = await self.engine.resolve_lead(
            event.invitee_phone, event.invitee_email or event.invitee_phone, tenant_id=tenant_id,
        )
        if resolution is None:
            who = event.invitee_email or event.invitee_phone
            logger.warning("No lead found for %s; %s dropped", who, event.key)
            result.errors.append(f"No lead found for {who}")
            return

        delta = await self.engine.apply_event(resolution.lead_id, event, user_id=event.user_id, source="calendly")
        result.processed += 1
        if delta.outcome != Outcome.APPLIED:
            return

        result.lead_updates += 1
        user_id = event.user_id
        if not user_id:
            lead = await self.engine.get_lead(resolution.lead_id)
            user_id = lead.tenant_id

        title, severity, priority, change_type, event_type = NOTIFICATION_STYLES[type(event)]
        await self.tracker.track_meeting_change(
            user_id, event.event_id, change_type,
            new_values={
                "lead_id": str(resolution.lead_id),
                "meeting_start": event.start_time.isoformat() if event.start_time else None,
                "event_uri": event.event_uri,
            },
        )
        await self.sink.create_notification(
            user_id=user_id,
            title=title,
            message=notification_message(event),
            severity=severity,
            action_url=action_url(event),
            metadata=self._metadata(event, priority, event_type, delta),
        )
        result.notifications_sent += 1

    @staticmethod
    def _metadata(event: MeetingEvent, priority: str, event_type: str, delta: LeadStateDelta) -> dict:
        metadata = {
            "category": "calendly_meeting",
            "priority": priority,
            "event_type": event_type,
            "invitee_email": event.invitee_email,
            "meeting_uri": event.event_uri,
            "meeting_start": event.start_time.isoformat() if event.start_time else None,
            "lead_id": str(delta.lead_id),
            "lead_update": delta.new_values,
        }
        if isinstance(event, MeetingCanceled):
            metadata["canceled_reason"] = event.reason
        return metadata
