from datetime import date, datetime, timedelta, timezone

import pytest

from app.models.lead import BantHeat, PipelineStatus, QueueStatus
from app.modules.queue.business_days import (
    business_days_in_month,
    calculate_daily_target,
    day_number,
    is_business_day,
    is_processing_day,
    is_within_business_hours,
    next_business_day,
)
from app.modules.queue.scheduler import PreparationStatus, QueueScheduler, lead_category
from app.modules.queue.settings import QueueSettingsError, parse_queue_settings

MONDAY = date(2026, 10, 19)
SATURDAY = date(2026, 10, 24)
CHRISTMAS = date(2026, 12, 25)  # a Friday


def sections(**targets):
    processing_targets = {"max_daily_capacity": 3, "target_leads_per_work_day": 10}
    processing_targets.update(targets)
    return {
        "work_days": {
            "work_days": [1, 2, 3, 4, 5],
            "business_hours": {"start": "09:00", "end": "17:00", "timezone": "UTC"},
            "custom_holidays": [CHRISTMAS.isoformat()],
        },
        "processing_targets": processing_targets,
        "automation": {"auto_queue_preparation": True, "queue_preparation_time": "18:00"},
    }


def settings(**targets):
    return parse_queue_settings("tenant-1", sections(**targets))


def test_day_numbers_start_on_sunday():
    assert day_number(date(2026, 10, 18)) == 0
    assert day_number(MONDAY) == 1
    assert day_number(SATURDAY) == 6


def test_business_day_rules():
    s = settings()
    assert is_business_day(MONDAY, s)
    assert not is_business_day(SATURDAY, s)
    assert not is_business_day(CHRISTMAS, s)
    assert next_business_day(date(2026, 10, 23), s) == date(2026, 10, 26)
    assert next_business_day(date(2026, 12, 24), s) == date(2026, 12, 28)
    assert business_days_in_month(2026, 10, s) == 22


def test_disabled_work_days_make_every_day_a_business_day():
    data = sections()
    data["work_days"]["enabled"] = False
    s = parse_queue_settings("tenant-1", data)
    assert is_business_day(SATURDAY, s)
    assert is_within_business_hours(s, datetime(2026, 10, 19, 23, 0, tzinfo=timezone.utc))


def test_business_hours_use_tenant_timezone():
    data = sections()
    data["work_days"]["business_hours"]["timezone"] = "Asia/Jerusalem"
    s = parse_queue_settings("tenant-1", data)
    # 07:00 UTC is 10:00 in Jerusalem (UTC+3 in October)
    assert is_within_business_hours(s, datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc))
    assert not is_within_business_hours(s, datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))


def test_daily_target_sources():
    assert calculate_daily_target(settings(max_daily_capacity=100), MONDAY) == 10
    assert calculate_daily_target(settings(max_daily_capacity=100, override_daily_target=7), MONDAY) == 7
    monthly = settings(max_daily_capacity=100, target_leads_per_work_day=None, target_leads_per_month=220)
    assert calculate_daily_target(monthly, MONDAY) == 10


def test_daily_target_is_clamped_to_capacity():
    assert calculate_daily_target(settings(max_daily_capacity=3), MONDAY) == 3


def test_weekend_target_is_reduced():
    s = settings(max_daily_capacity=100, weekend_processing={"enabled": True, "reduced_target_percentage": 50})
    assert is_processing_day(SATURDAY, s)
    assert not is_processing_day(CHRISTMAS, s)
    assert calculate_daily_target(s, SATURDAY) == 5
    assert calculate_daily_target(settings(), SATURDAY) == 0


def test_settings_require_capacity_and_timezone():
    data = sections()
    del data["processing_targets"]["max_daily_capacity"]
    with pytest.raises(QueueSettingsError, match="max_daily_capacity"):
        parse_queue_settings("tenant-1", data)

    data = sections()
    del data["work_days"]["business_hours"]["timezone"]
    with pytest.raises(QueueSettingsError, match="timezone"):
        parse_queue_settings("tenant-1", data)

    with pytest.raises(QueueSettingsError, match="reduced_target_percentage"):
        settings(weekend_processing={"enabled": True})


def test_lead_categories(add_lead):
    assert lead_category(add_lead(bant_heat=BantHeat.HOT)) == "hot_leads"
    assert lead_category(add_lead(pipeline_status=PipelineStatus.QUALIFIED)) == "qualified_leads"
    assert lead_category(add_lead(interaction_count=2)) == "follow_ups"
    assert lead_category(add_lead()) == "new_leads"


@pytest.fixture
def scheduler(store):
    store.queue_settings["tenant-1"] = sections()
    return QueueScheduler(store)


@pytest.mark.asyncio
async def test_prepare_respects_capacity_and_ranking(scheduler, store, add_lead):
    base = datetime(2026, 10, 1, tzinfo=timezone.utc)
    new = add_lead(created_at=base)
    older_follow_up = add_lead(interaction_count=1, last_interaction=base)
    newer_follow_up = add_lead(interaction_count=1, last_interaction=base + timedelta(days=3))
    hot = add_lead(bant_heat=BantHeat.HOT)
    qualified = add_lead(pipeline_status=PipelineStatus.QUALIFIED)
    add_lead(pipeline_status=PipelineStatus.LOST, bant_heat=BantHeat.HOT)
    add_lead(tenant_id="tenant-2", bant_heat=BantHeat.HOT)

    report = await scheduler.prepare_queue("tenant-1", MONDAY)

    assert report.status == PreparationStatus.PREPARED
    assert report.target == 3
    assert [a.lead_id for a in report.assignments] == [hot.id, qualified.id, older_follow_up.id]
    assert [a.position for a in report.assignments] == [1, 2, 3]
    assert report.assignments[0].selection_reason == "hot_leads"

    queued = store.leads[hot.id]
    assert queued.queue_status == QueueStatus.QUEUED
    assert queued.queue_metadata["queued_for_date"] == MONDAY.isoformat()
    assert store.leads[new.id].queue_status == QueueStatus.IDLE
    assert store.leads[newer_follow_up.id].queue_status == QueueStatus.IDLE
    assert [c.metadata["source"] for c in store.system_changes] == ["queue"] * 3


@pytest.mark.asyncio
async def test_second_run_returns_existing_queue(scheduler, store, add_lead):
    for _ in range(5):
        add_lead()

    first = await scheduler.prepare_queue("tenant-1", MONDAY)
    add_lead(bant_heat=BantHeat.HOT)
    second = await scheduler.prepare_queue("tenant-1", MONDAY)

    assert second.status == PreparationStatus.ALREADY_PREPARED
    assert [a.lead_id for a in second.assignments] == [a.lead_id for a in first.assignments]
    assert len(store.queue_assignments[("tenant-1", MONDAY)]) == 3


@pytest.mark.asyncio
async def test_holiday_is_not_a_work_day(scheduler, store, add_lead):
    add_lead()
    report = await scheduler.prepare_queue("tenant-1", CHRISTMAS)

    assert report.status == PreparationStatus.NOT_A_WORK_DAY
    assert store.queue_assignments == {}


@pytest.mark.asyncio
async def test_missing_capacity_skips_tenant(store, add_lead):
    data = sections()
    del data["processing_targets"]["max_daily_capacity"]
    store.queue_settings["tenant-1"] = data
    add_lead()

    report = await QueueScheduler(store).prepare_queue("tenant-1", MONDAY)

    assert report.status == PreparationStatus.SKIPPED
    assert "max_daily_capacity" in report.reason
    assert store.queue_assignments == {}


@pytest.mark.asyncio
async def test_concurrent_run_reports_busy(scheduler, store, add_lead):
    add_lead()
    async with store.advisory_lock(f"queue:tenant-1:{MONDAY.isoformat()}"):
        report = await scheduler.prepare_queue("tenant-1", MONDAY)

    assert report.status == PreparationStatus.BUSY
    assert store.queue_assignments == {}


@pytest.mark.asyncio
async def test_default_date_is_next_business_day(scheduler, add_lead):
    add_lead()
    friday_evening = datetime(2026, 10, 23, 19, 0, tzinfo=timezone.utc)

    report = await scheduler.prepare_queue("tenant-1", now=friday_evening)

    assert report.queue_date == date(2026, 10, 26)


@pytest.mark.asyncio
async def test_due_preparations_wait_for_preparation_time(scheduler, store, add_lead):
    add_lead()
    store.queue_settings["broken"] = {"work_days": {}}

    early = await scheduler.run_due_preparations(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
    assert [r.tenant_id for r in early] == ["broken"]
    assert early[0].status == PreparationStatus.SKIPPED

    late = await scheduler.run_due_preparations(datetime(2026, 10, 19, 18, 30, tzinfo=timezone.utc))
    prepared = [r for r in late if r.tenant_id == "tenant-1"]
    assert prepared[0].status == PreparationStatus.PREPARED
    assert prepared[0].queue_date == date(2026, 10, 20)


@pytest.mark.asyncio
async def test_manual_enqueue_reports_conflicts(scheduler, store, add_lead):
    a, b, c = add_lead(), add_lead(), add_lead()
    lost = add_lead(pipeline_status=PipelineStatus.LOST)
    other_tenant = add_lead(tenant_id="tenant-2")
    store.queue_settings["tenant-1"] = sections(max_daily_capacity=2)

    first = await scheduler.enqueue_leads("tenant-1", [a.id, lost.id, other_tenant.id], MONDAY)
    assert [x.lead_id for x in first.assignments] == [a.id]
    assert first.conflicts == {str(lost.id): "ineligible", str(other_tenant.id): "not found"}
    assert first.remaining_capacity == 1

    second = await scheduler.enqueue_leads("tenant-1", [a.id, b.id, c.id], MONDAY)
    assert [x.lead_id for x in second.assignments] == [b.id]
    assert second.assignments[0].position == 2
    assert second.conflicts == {str(a.id): "already queued", str(c.id): "over capacity"}
    assert second.remaining_capacity == 0


@pytest.mark.asyncio
async def test_leads_left_in_yesterdays_queue_are_eligible_again(scheduler, store, add_lead):
    a, b = add_lead(), add_lead()
    tuesday = MONDAY + timedelta(days=1)

    monday_report = await scheduler.prepare_queue("tenant-1", MONDAY)
    tuesday_report = await scheduler.prepare_queue("tenant-1", tuesday)

    assert monday_report.status == tuesday_report.status == PreparationStatus.PREPARED
    assert {x.lead_id for x in tuesday_report.assignments} == {a.id, b.id}
    assert store.leads[a.id].queue_metadata["queued_for_date"] == tuesday.isoformat()


@pytest.mark.asyncio
async def test_manual_enqueue_takes_lead_queued_for_an_earlier_day(scheduler, store, add_lead):
    lead = add_lead()
    await scheduler.prepare_queue("tenant-1", MONDAY)

    result = await scheduler.enqueue_leads("tenant-1", [lead.id], date(2026, 10, 21))

    assert [x.lead_id for x in result.assignments] == [lead.id]
    assert result.conflicts == {}
    assert store.leads[lead.id].queue_metadata["queued_for_date"] == "2026-10-21"


@pytest.mark.asyncio
async def test_enqueue_without_settings_raises(store, add_lead):
    lead = add_lead()
    with pytest.raises(QueueSettingsError):
        await QueueScheduler(store).enqueue_leads("tenant-1", [lead.id], MONDAY)


def test_admin_prepare_endpoint(client, store, add_lead):
    store.queue_settings["tenant-1"] = sections()
    lead = add_lead(bant_heat=BantHeat.HOT)

    response = client.post("/admin/queue/tenant-1/prepare", params={"queue_date": MONDAY.isoformat()})

    assert response.status_code == 200
    assert response.json()["status"] == "prepared"
    listing = client.get(f"/admin/queue/tenant-1/{MONDAY.isoformat()}").json()
    assert [row["lead_id"] for row in listing["assignments"]] == [str(lead.id)]
