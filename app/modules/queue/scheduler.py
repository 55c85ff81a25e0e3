"""
Queue Scheduler: decides which leads enter a tenant's processing queue for a date.

The scheduler is the only writer of `queue_status`. A (tenant, date) run is
single-flight: a concurrent run for the same key reports `busy`, and a date that
already has assignments is returned as is. Assignments are written only after the
whole selection is computed.
"""

import logging
from datetime import date, datetime, timezone
from enum import Enum
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from app.models.lead import BantHeat, Lead, PipelineStatus, QueueStatus, queue_eligible
from app.models.queue import PriorityWeights, QueueAssignment
from app.modules.changes.tracker import ChangeTracker
from app.modules.queue.business_days import calculate_daily_target, is_processing_day, next_business_day
from app.modules.queue.settings import QueueSettingsError, load_queue_settings
from app.modules.store.base import LeadStore
from app.modules.store.retry import with_retries

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class PreparationStatus(str, Enum):
    PREPARED = "prepared"
    ALREADY_PREPARED = "already_prepared"
    NOT_A_WORK_DAY = "not_a_work_day"
    BUSY = "busy"
    SKIPPED = "skipped"  # missing or invalid settings


class QueuePreparation(BaseModel):
    tenant_id: str
    queue_date: date | None = None
    status: PreparationStatus
    target: int = 0
    assignments: list[QueueAssignment] = Field(default_factory=list)
    reason: str | None = None


class EnqueueResult(BaseModel):
    tenant_id: str
    queue_date: date
    assignments: list[QueueAssignment] = Field(default_factory=list)
    conflicts: dict[str, str] = Field(default_factory=dict)  # lead id -> reason
    remaining_capacity: int = 0


def lead_category(lead: Lead) -> str:
    if lead.bant_heat >= BantHeat.HOT:
        return "hot_leads"
    if lead.pipeline_status == PipelineStatus.QUALIFIED:
        return "qualified_leads"
    if lead.interaction_count > 0 or lead.next_follow_up is not None:
        return "follow_ups"
    return "new_leads"


def _due_at(lead: Lead) -> datetime:
    due = lead.next_follow_up or lead.last_interaction or lead.created_at or _EPOCH
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due


def rank_leads(leads: list[Lead], weights: PriorityWeights) -> list[tuple[Lead, str, float]]:
    """Highest weight first, then the earliest due, then lead id."""
    scored = []
    for lead in leads:
        category = lead_category(lead)
        scored.append((lead, category, float(getattr(weights, category))))
    scored.sort(key=lambda item: (-item[2], _due_at(item[0]), str(item[0].id)))
    return scored


class QueueScheduler:
    def __init__(self, store: LeadStore, tracker: ChangeTracker | None = None):
        self.store = store
        self.tracker = tracker or ChangeTracker(store)

    async def prepare_queue(self, tenant_id: str, for_date: date | None = None,
                            now: datetime | None = None) -> QueuePreparation:
        try:
            settings = await load_queue_settings(self.store, tenant_id)
        except QueueSettingsError as e:
            logger.warning("Skipping queue preparation: %s", e)
            return QueuePreparation(tenant_id=tenant_id, queue_date=for_date, status=PreparationStatus.SKIPPED, reason=str(e))

        if for_date is None:
            tz = ZoneInfo(settings.work_days.business_hours.timezone)
            today = (now or datetime.now(timezone.utc)).astimezone(tz).date()
            for_date = next_business_day(today, settings)

        if not is_processing_day(for_date, settings):
            logger.info("Queue for %s on %s: not a work day", tenant_id, for_date)
            return QueuePreparation(tenant_id=tenant_id, queue_date=for_date, status=PreparationStatus.NOT_A_WORK_DAY)

        target = calculate_daily_target(settings, for_date)

        async with self.store.try_advisory_lock(f"queue:{tenant_id}:{for_date.isoformat()}") as acquired:
            if not acquired:
                logger.info("Queue for %s on %s is being prepared elsewhere", tenant_id, for_date)
                return QueuePreparation(tenant_id=tenant_id, queue_date=for_date, status=PreparationStatus.BUSY, target=target)

            existing = await with_retries(
                lambda: self.store.list_queue_assignments(tenant_id, for_date),
                f"list queue assignments for {tenant_id} {for_date}",
            )
            if existing:
                return QueuePreparation(
                    tenant_id=tenant_id, queue_date=for_date, status=PreparationStatus.ALREADY_PREPARED,
                    target=target, assignments=existing,
                )

            leads = await with_retries(
                lambda: self.store.list_eligible_leads(tenant_id, for_date),
                f"list eligible leads for {tenant_id} {for_date}",
            )
            selected = rank_leads(leads, settings.advanced.priority_weights)[:target]
            now_utc = datetime.now(timezone.utc)
            assignments = [
                QueueAssignment(
                    tenant_id=tenant_id,
                    lead_id=lead.id,
                    queue_date=for_date,
                    position=position,
                    priority_score=score,
                    selection_reason=category,
                    created_at=now_utc,
                )
                for position, (lead, category, score) in enumerate(selected, start=1)
            ]
            saved = await self._write(assignments)

        logger.info(
            "Prepared queue for %s on %s: %d of %d eligible leads (target %d)",
            tenant_id, for_date, len(saved), len(leads), target,
        )
        return QueuePreparation(
            tenant_id=tenant_id, queue_date=for_date, status=PreparationStatus.PREPARED,
            target=target, assignments=saved,
        )

    async def enqueue_leads(self, tenant_id: str, lead_ids: list[UUID], for_date: date) -> EnqueueResult:
        """Manually queue specific leads, within the date's remaining capacity.

        Raises QueueSettingsError when the tenant has no valid settings.
        """
        settings = await load_queue_settings(self.store, tenant_id)
        capacity = settings.processing_targets.max_daily_capacity

        async with self.store.advisory_lock(f"queue:{tenant_id}:{for_date.isoformat()}"):
            existing = await with_retries(
                lambda: self.store.list_queue_assignments(tenant_id, for_date),
                f"list queue assignments for {tenant_id} {for_date}",
            )
            queued_ids = {a.lead_id for a in existing}
            remaining = capacity - len(existing)
            result = EnqueueResult(tenant_id=tenant_id, queue_date=for_date)
            assignments = []
            now = datetime.now(timezone.utc)

            for lead_id in lead_ids:
                lead = await with_retries(lambda: self.store.get_lead(lead_id), f"get lead {lead_id}")
                if lead is None or lead.tenant_id != tenant_id:
                    result.conflicts[str(lead_id)] = "not found"
                elif lead_id in queued_ids:
                    result.conflicts[str(lead_id)] = "already queued"
                elif not queue_eligible(lead, for_date):
                    result.conflicts[str(lead_id)] = "ineligible"
                elif remaining <= 0:
                    result.conflicts[str(lead_id)] = "over capacity"
                else:
                    queued_ids.add(lead_id)
                    remaining -= 1
                    assignments.append(QueueAssignment(
                        tenant_id=tenant_id,
                        lead_id=lead_id,
                        queue_date=for_date,
                        position=len(existing) + len(assignments) + 1,
                        priority_score=float(getattr(settings.advanced.priority_weights, lead_category(lead))),
                        selection_reason="manual",
                        created_at=now,
                    ))

            result.assignments = await self._write(assignments) if assignments else []
            result.remaining_capacity = max(remaining, 0)

        logger.info(
            "Enqueued %d leads for %s on %s (%d conflicts)",
            len(result.assignments), tenant_id, for_date, len(result.conflicts),
        )
        return result

    async def run_due_preparations(self, now: datetime | None = None) -> list[QueuePreparation]:
        """Prepare every tenant whose local preparation time has passed. Cron entry point."""
        now = now or datetime.now(timezone.utc)
        tenants = await with_retries(self.store.list_queue_tenants, "list queue tenants")
        reports = []

        for tenant_id in tenants:
            try:
                settings = await load_queue_settings(self.store, tenant_id)
            except QueueSettingsError as e:
                logger.warning("Skipping queue preparation: %s", e)
                reports.append(QueuePreparation(tenant_id=tenant_id, status=PreparationStatus.SKIPPED, reason=str(e)))
                continue

            if not settings.automation.auto_queue_preparation:
                continue
            local = now.astimezone(ZoneInfo(settings.work_days.business_hours.timezone))
            if local.time() < settings.automation.queue_preparation_time:
                continue

            try:
                reports.append(await self.prepare_queue(tenant_id, next_business_day(local.date(), settings)))
            except Exception as e:
                logger.exception("Queue preparation failed for %s: %s", tenant_id, e)
                reports.append(QueuePreparation(tenant_id=tenant_id, status=PreparationStatus.SKIPPED, reason=str(e)))

        return reports

    async def list_queue(self, tenant_id: str, queue_date: date) -> list[QueueAssignment]:
        return await self.store.list_queue_assignments(tenant_id, queue_date)

    async def _write(self, assignments: list[QueueAssignment]) -> list[QueueAssignment]:
        saved = await with_retries(
            lambda: self.store.save_queue_assignments(assignments),
            f"save {len(assignments)} queue assignments",
        )
        for assignment in saved:
            await self._mark_queued(assignment)
        return saved

    async def _mark_queued(self, assignment: QueueAssignment) -> None:
        async with self.store.advisory_lock(f"lead:{assignment.lead_id}"):
            lead = await with_retries(lambda: self.store.get_lead(assignment.lead_id), f"get lead {assignment.lead_id}")
            if lead is None:
                logger.warning("Queued lead %s no longer exists", assignment.lead_id)
                return
            previous = lead.queue_status
            now = datetime.now(timezone.utc)
            lead.queue_status = QueueStatus.QUEUED
            lead.queue_metadata = {
                **lead.queue_metadata,
                "queued_for_date": assignment.queue_date.isoformat(),
                "queued_at": now.isoformat(),
                "selection_reason": assignment.selection_reason,
                "priority_score": assignment.priority_score,
                "position": assignment.position,
            }
            lead.updated_at = now
            await with_retries(lambda: self.store.save_lead(lead), f"save lead {lead.id}")

        await self.tracker.track_lead_change(
            lead.tenant_id, lead.id, "status_changed",
            old_values={"queue_status": previous.value},
            new_values={"queue_status": QueueStatus.QUEUED.value, "queued_for_date": assignment.queue_date.isoformat()},
            source="queue",
        )
