"""
Admin API: internal endpoints for queue management, notification rollups,
change history, external lead pipelines and cron-triggered background jobs.
"""

import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.database import get_store
from app.models.events import ProcessingStateChanged, QualificationPromoted
from app.models.lead import BantHeat, ProcessingState
from app.modules.changes.tracker import ChangeTracker
from app.modules.leads.service import LeadEngine, LeadNotFoundError
from app.modules.leads.state_machine import InvalidTransitionError, LeadStateDelta
from app.modules.queue.scheduler import QueueScheduler
from app.modules.queue.settings import QueueSettingsError

logger = logging.getLogger(__name__)

router = APIRouter()


class EnqueueRequest(BaseModel):
    lead_ids: list[UUID]
    queue_date: date


class QualificationRequest(BaseModel):
    event_id: str
    heat: BantHeat
    source: str = "bant"


class ProcessingRequest(BaseModel):
    event_id: str
    state: ProcessingState
    error: str | None = None
    details: dict = Field(default_factory=dict)


def _delta_body(delta: LeadStateDelta) -> dict:
    return {
        "lead_id": str(delta.lead_id),
        "event_key": delta.event_key,
        "outcome": delta.outcome.value,
        "reason": delta.reason,
        "old_values": delta.old_values,
        "new_values": delta.new_values,
    }


# --- Cron-triggered jobs ---

@router.post("/jobs/prepare-queue")
async def run_queue_preparation():
    """Prepare tomorrow's queue for every tenant that is due (called by cron)."""
    scheduler = QueueScheduler(await get_store())
    reports = await scheduler.run_due_preparations()
    logger.info("Queue preparation job: %d tenants reported", len(reports))
    return {"reports": reports}


# --- Queue ---

@router.post("/queue/{tenant_id}/prepare")
async def prepare_queue(tenant_id: str, queue_date: date | None = None):
    scheduler = QueueScheduler(await get_store())
    return await scheduler.prepare_queue(tenant_id, queue_date)


@router.post("/queue/{tenant_id}/enqueue")
async def enqueue_leads(tenant_id: str, body: EnqueueRequest):
    scheduler = QueueScheduler(await get_store())
    try:
        return await scheduler.enqueue_leads(tenant_id, body.lead_ids, body.queue_date)
    except QueueSettingsError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/queue/{tenant_id}/{queue_date}")
async def get_queue(tenant_id: str, queue_date: date):
    scheduler = QueueScheduler(await get_store())
    assignments = await scheduler.list_queue(tenant_id, queue_date)
    return {"tenant_id": tenant_id, "queue_date": queue_date, "assignments": assignments}


# --- Notifications & change history ---

@router.get("/notifications/{user_id}")
async def list_notifications(user_id: str, limit: int = 50):
    """Unread rollups plus the latest individual notifications for a user."""
    store = await get_store()
    tracker = ChangeTracker(store)
    return {
        "aggregated": await tracker.get_aggregated_notifications(user_id),
        "notifications": await store.list_notifications(user_id, limit=limit),
    }


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: UUID):
    tracker = ChangeTracker(await get_store())
    row = await tracker.mark_notification_read(notification_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return row


@router.post("/notifications/{user_id}/read-all")
async def mark_all_notifications_read(user_id: str):
    tracker = ChangeTracker(await get_store())
    return {"marked_read": await tracker.mark_all_notifications_read(user_id)}


@router.get("/changes/{user_id}")
async def list_changes(user_id: str, limit: int = 50):
    tracker = ChangeTracker(await get_store())
    return await tracker.get_recent_changes(user_id, limit=limit)


@router.get("/changes/{user_id}/stats")
async def change_statistics(user_id: str, days: int = 30):
    tracker = ChangeTracker(await get_store())
    return await tracker.get_change_statistics(user_id, days=days)


@router.post("/changes/{change_id}/read")
async def mark_change_read(change_id: UUID):
    tracker = ChangeTracker(await get_store())
    if not await tracker.mark_change_read(change_id):
        raise HTTPException(status_code=404, detail=f"Change {change_id} not found")
    return {"id": str(change_id), "is_read": True}


# --- Leads (external qualification and processing pipelines) ---

@router.get("/leads/{lead_id}")
async def get_lead(lead_id: UUID):
    engine = LeadEngine(await get_store())
    lead = await engine.get_lead(lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return lead


@router.post("/leads/{lead_id}/qualification")
async def promote_qualification(lead_id: UUID, body: QualificationRequest):
    """Apply a BANT promotion (cold -> warm -> hot) from the qualification pipeline."""
    engine = LeadEngine(await get_store())
    event = QualificationPromoted(event_id=body.event_id, heat=body.heat, source=body.source)
    try:
        delta = await engine.apply_event(lead_id, event, source=body.source)
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _delta_body(delta)


@router.post("/leads/{lead_id}/processing")
async def change_processing_state(lead_id: UUID, body: ProcessingRequest):
    """Record a processing-state change reported by the follow-up pipeline."""
    engine = LeadEngine(await get_store())
    event = ProcessingStateChanged(event_id=body.event_id, state=body.state, error=body.error, details=body.details)
    try:
        delta = await engine.apply_event(lead_id, event, source="processing")
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _delta_body(delta)
