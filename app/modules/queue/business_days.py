"""
Business-day arithmetic over a tenant's QueueSettings.

Days of the week are numbered 0=Sunday ... 6=Saturday, as stored in settings.
"""

import calendar
import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from app.models.queue import QueueSettings

logger = logging.getLogger(__name__)

SEARCH_LIMIT_DAYS = 14


def day_number(day: date) -> int:
    """0=Sunday ... 6=Saturday."""
    return (day.weekday() + 1) % 7


def is_holiday(day: date, settings: QueueSettings) -> bool:
    return settings.work_days.exclude_holidays and day in settings.work_days.custom_holidays


def is_standard_work_day(day: date, settings: QueueSettings) -> bool:
    """Whether the weekday is one of the configured work days (holidays aside)."""
    return day_number(day) in settings.work_days.work_days


def is_business_day(day: date, settings: QueueSettings) -> bool:
    if not settings.work_days.enabled:
        return True
    return is_standard_work_day(day, settings) and not is_holiday(day, settings)


def is_processing_day(day: date, settings: QueueSettings) -> bool:
    """Business days, plus non-work weekdays when weekend processing is on."""
    if is_business_day(day, settings):
        return True
    weekend = settings.processing_targets.weekend_processing
    return weekend.enabled and not is_standard_work_day(day, settings) and not is_holiday(day, settings)


def next_business_day(day: date, settings: QueueSettings) -> date:
    candidate = day + timedelta(days=1)
    while not is_business_day(candidate, settings):
        candidate += timedelta(days=1)
        if (candidate - day).days > SEARCH_LIMIT_DAYS:
            logger.warning("No business day within %d days of %s for %s", SEARCH_LIMIT_DAYS, day, settings.tenant_id)
            return day + timedelta(days=1)
    return candidate


def business_days_in_month(year: int, month: int, settings: QueueSettings) -> int:
    _, days = calendar.monthrange(year, month)
    return sum(1 for d in range(1, days + 1) if is_business_day(date(year, month, d), settings))


def is_within_business_hours(settings: QueueSettings, moment: datetime) -> bool:
    if not settings.work_days.enabled:
        return True
    hours = settings.work_days.business_hours
    local = moment.astimezone(ZoneInfo(hours.timezone))
    return hours.start <= local.time() <= hours.end


def base_daily_target(settings: QueueSettings, day: date) -> int:
    targets = settings.processing_targets
    if targets.override_daily_target is not None:
        return targets.override_daily_target
    if targets.target_leads_per_work_day is not None:
        return targets.target_leads_per_work_day
    business_days = business_days_in_month(day.year, day.month, settings)
    if business_days == 0:
        return 0
    return targets.target_leads_per_month // business_days


def calculate_daily_target(settings: QueueSettings, day: date) -> int:
    """Number of leads to queue on `day`, never above max_daily_capacity."""
    targets = settings.processing_targets
    if is_business_day(day, settings):
        target = base_daily_target(settings, day)
    elif is_processing_day(day, settings):
        target = base_daily_target(settings, day) * targets.weekend_processing.reduced_target_percentage // 100
    else:
        return 0
    return min(target, targets.max_daily_capacity)
