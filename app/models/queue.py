from datetime import date, datetime, time
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class BusinessHours(BaseModel):
    start: time
    end: time
    timezone: str  # required: the scheduler never guesses a tenant's timezone

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{value}'") from e
        return value

    @model_validator(mode="after")
    def _ordered(self):
        if self.end <= self.start:
            raise ValueError("business_hours.end must be after business_hours.start")
        return self


class WorkDays(BaseModel):
    enabled: bool = True
    work_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0=Sunday ... 6=Saturday
    business_hours: BusinessHours
    exclude_holidays: bool = True
    custom_holidays: list[date] = Field(default_factory=list)

    @field_validator("work_days")
    @classmethod
    def _valid_days(cls, value: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in value):
            raise ValueError("work_days entries must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))


class WeekendProcessing(BaseModel):
    enabled: bool = False
    reduced_target_percentage: int | None = None

    @model_validator(mode="after")
    def _percentage_when_enabled(self):
        if self.enabled and self.reduced_target_percentage is None:
            raise ValueError("weekend_processing.reduced_target_percentage is required when enabled")
        if self.reduced_target_percentage is not None and not 0 <= self.reduced_target_percentage <= 100:
            raise ValueError("weekend_processing.reduced_target_percentage must be between 0 and 100")
        return self


class ProcessingTargets(BaseModel):
    target_leads_per_month: int | None = Field(default=None, ge=0)
    target_leads_per_work_day: int | None = Field(default=None, ge=0)
    override_daily_target: int | None = Field(default=None, ge=0)
    max_daily_capacity: int = Field(ge=0)  # required, no default
    weekend_processing: WeekendProcessing = Field(default_factory=WeekendProcessing)

    @model_validator(mode="after")
    def _has_target(self):
        if (
            self.override_daily_target is None
            and self.target_leads_per_work_day is None
            and self.target_leads_per_month is None
        ):
            raise ValueError("one of override_daily_target, target_leads_per_work_day or target_leads_per_month is required")
        return self


class Automation(BaseModel):
    auto_queue_preparation: bool = True
    queue_preparation_time: time = time(18, 0)


class PriorityWeights(BaseModel):
    new_leads: float = 3
    follow_ups: float = 7
    qualified_leads: float = 9
    hot_leads: float = 10


class Advanced(BaseModel):
    priority_weights: PriorityWeights = Field(default_factory=PriorityWeights)


class QueueSettings(BaseModel):
    tenant_id: str
    work_days: WorkDays
    processing_targets: ProcessingTargets
    automation: Automation = Field(default_factory=Automation)
    advanced: Advanced = Field(default_factory=Advanced)


class QueueAssignment(BaseModel):
    tenant_id: str
    lead_id: UUID
    queue_date: date
    position: int
    priority_score: float
    selection_reason: str  # new_leads, follow_ups, qualified_leads, hot_leads, manual
    created_at: datetime
