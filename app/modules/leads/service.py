"""
Lead engine: applies domain events to stored leads.

Each application runs under a per-lead advisory lock so that concurrent
webhook deliveries (across processes too) read-modify-write one lead at a time.
Applied deltas are recorded with the change tracker under that lock, before the
lead row is saved; the change id is derived from the event key, so replaying an
event whose save failed records the change only once.
"""

import logging
from datetime import datetime, timezone
from uuid import NAMESPACE_URL, UUID, uuid5

from pydantic import BaseModel

from app.config import get_settings
from app.models.events import DomainEvent
from app.models.lead import Lead
from app.modules.changes.tracker import ChangeTracker
from app.modules.correlation.phone import match_confidence, resolve
from app.modules.leads.state_machine import LeadStateDelta, Outcome, apply_transition
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries

logger = logging.getLogger(__name__)


class LeadNotFoundError(Exception):
    pass


class LeadResolution(BaseModel):
    lead_id: UUID
    method: str  # phone, identifier
    confidence: str


def lead_change_id(lead_id: UUID, event_key: str) -> UUID:
    return uuid5(NAMESPACE_URL, f"lead:{lead_id}:{event_key}")


class LeadEngine:
    def __init__(self, store: LeadStore, tracker: ChangeTracker | None = None):
        self.store = store
        self.tracker = tracker or ChangeTracker(store)

    async def resolve_lead(self, phone: str | None, identifier: str | None = None,
                           tenant_id: str | None = None) -> LeadResolution | None:
        """Resolve a lead by phone, falling back to an exact email/raw-phone identifier match.

        With `tenant_id` only that tenant's leads are candidates.
        """
        settings = get_settings()

        if phone:
            candidates = await with_retries(
                lambda: self.store.list_lead_phones(tenant_id),
                f"list lead phones for {tenant_id or 'all tenants'}",
            )
            match = resolve(phone, candidates, settings.default_country_code, settings.min_phone_digits)
            if match:
                logger.info("Phone %s resolved to lead %s via %s (%s)", phone, match.lead_id, match.variant, match.confidence)
                return LeadResolution(lead_id=match.lead_id, method="phone", confidence=match.confidence)

        if identifier:
            leads = await with_retries(
                lambda: self.store.find_leads_by_identifier(identifier, tenant_id),
                f"find leads by {identifier}",
            )
            if leads:
                lead = sorted(leads, key=lambda l: str(l.id))[0]
                confidence = match_confidence(phone, lead.phone) if phone and lead.phone else "high"
                logger.info("Identifier %s resolved to lead %s", identifier, lead.id)
                return LeadResolution(lead_id=lead.id, method="identifier", confidence=confidence)

        logger.info("No lead found for phone=%s identifier=%s tenant=%s", phone, identifier, tenant_id)
        return None

    async def get_lead(self, lead_id: UUID) -> Lead | None:
        return await with_retries(lambda: self.store.get_lead(lead_id), f"get lead {lead_id}")

    async def apply_event(self, lead_id: UUID, event: DomainEvent, user_id: str | None = None,
                          source: str = "system") -> LeadStateDelta:
        """Apply `event` to the lead and persist the result.

        Raises LeadNotFoundError for unknown leads and InvalidTransitionError for
        explicit requests the state machine refuses.
        """
        settings = get_settings()

        async with self.store.advisory_lock(f"lead:{lead_id}"):
            lead = await self.get_lead(lead_id)
            if lead is None:
                raise LeadNotFoundError(f"lead {lead_id} not found")

            updated, delta = apply_transition(lead, event, history=settings.applied_event_history)
            if delta.outcome == Outcome.APPLIED and delta.changes:
                await self.tracker.track_lead_change(
                    user_id or lead.tenant_id,
                    lead_id,
                    "status_changed" if delta.status_changed else "updated",
                    old_values=delta.old_values,
                    new_values=delta.new_values,
                    source=source,
                    metadata={"event_key": delta.event_key},
                    change_id=lead_change_id(lead_id, delta.event_key),
                )
            if delta.outcome != Outcome.DUPLICATE:
                updated.updated_at = datetime.now(timezone.utc)
                await with_retries(lambda: self.store.save_lead(updated), f"save lead {lead_id}")

        if delta.outcome == Outcome.APPLIED:
            logger.info("Lead %s: %s applied (%s)", lead_id, delta.event_key, ", ".join(delta.changes) or "no field changes")
        elif delta.outcome == Outcome.IGNORED:
            logger.info("Lead %s: %s ignored (%s)", lead_id, delta.event_key, delta.reason)
        else:
            logger.info("Lead %s: %s already applied", lead_id, delta.event_key)

        return delta
