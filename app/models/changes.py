from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class SystemChange(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    entity_type: str  # lead, project, message, meeting, system
    entity_id: str
    change_type: str  # created, updated, deleted, status_changed
    old_values: dict | None = None
    new_values: dict | None = None
    description: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    is_read: bool = False
    read_at: datetime | None = None


class AggregatedNotification(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    notification_type: str
    count: int = 1
    title: str
    description: str
    last_updated: datetime
    created_at: datetime
    is_read: bool = False
    read_at: datetime | None = None
    metadata: dict = Field(default_factory=dict)


class Notification(BaseModel):
    """User-facing alert handed to the notification sink."""
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    title: str
    message: str
    type: str = "info"  # success, info, warning, error
    action_url: str | None = None
    metadata: dict = Field(default_factory=dict)
    read: bool = False
    created_at: datetime
