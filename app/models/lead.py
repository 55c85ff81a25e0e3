from datetime import date, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class PipelineStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    DEMO_SCHEDULED = "demo_scheduled"
    CONVERTED = "converted"
    LOST = "lost"


class QualificationState(str, Enum):
    NEW = "new"
    ENGAGED = "engaged"
    QUALIFIED = "qualified"
    MEETING_BOOKED = "meeting_booked"
    CLOSED = "closed"


class BantHeat(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"
    BURNING = "burning"

    @property
    def rank(self) -> int:
        return _HEAT_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, BantHeat):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, BantHeat):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, BantHeat):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, BantHeat):
            return NotImplemented
        return self.rank >= other.rank


_HEAT_ORDER = [BantHeat.COLD, BantHeat.WARM, BantHeat.HOT, BantHeat.BURNING]


class ProcessingState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"


TERMINAL_PIPELINE = {PipelineStatus.CONVERTED, PipelineStatus.LOST}

# Fields that make up the lead's composite status
STATUS_FIELDS = ("pipeline_status", "qualification_state", "bant_heat", "processing_state", "queue_status")


class Lead(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    phone: str | None = None
    name: str | None = None
    email: str | None = None

    pipeline_status: PipelineStatus = PipelineStatus.NEW
    qualification_state: QualificationState = QualificationState.NEW
    bant_heat: BantHeat = BantHeat.COLD
    processing_state: ProcessingState = ProcessingState.PENDING
    queue_status: QueueStatus = QueueStatus.IDLE

    interaction_count: int = 0
    follow_up_count: int = 0

    first_interaction: datetime | None = None
    last_interaction: datetime | None = None
    next_follow_up: datetime | None = None
    last_agent_processed_at: datetime | None = None

    requires_human_review: bool = False

    metadata: dict = Field(default_factory=dict)  # provider breadcrumbs, e.g. calendly_meeting
    queue_metadata: dict = Field(default_factory=dict)
    applied_events: list[str] = Field(default_factory=list)  # most recent applied external event keys

    created_at: datetime | None = None
    updated_at: datetime | None = None


class LeadPhone(BaseModel):
    """Correlation candidate: the minimum the phone correlator needs to see."""
    id: UUID
    phone: str
    last_interaction: datetime | None = None


def queue_eligible(lead: Lead, queue_date: date) -> bool:
    """Open leads that are idle, or still queued from an earlier date."""
    if lead.pipeline_status in TERMINAL_PIPELINE:
        return False
    if lead.queue_status == QueueStatus.IDLE:
        return True
    queued_for = lead.queue_metadata.get("queued_for_date") or ""
    return lead.queue_status == QueueStatus.QUEUED and queued_for < queue_date.isoformat()
