import asyncio
from uuid import uuid4

import pytest

from app.modules.changes.templates import aggregated_description, aggregated_title, change_description
from app.modules.changes.tracker import ChangeTracker


def unread(store, user_id, notification_type):
    return [
        row for row in store.aggregated.values()
        if row.user_id == user_id and row.notification_type == notification_type and not row.is_read
    ]


def test_titles_switch_between_singular_and_plural():
    assert aggregated_title("lead", 1) == "New Lead Update"
    assert aggregated_title("lead", 12) == "12 Lead Updates"
    assert aggregated_description("message", 3) == "You have 3 new messages"
    assert aggregated_title("invoice", 2) == "2 Updates"
    assert change_description("meeting", "deleted") == "Meeting cancelled"
    assert change_description("invoice", "status_changed") == "invoice status changed"


@pytest.mark.asyncio
async def test_n_changes_fold_into_one_rollup(store):
    tracker = ChangeTracker(store)
    for i in range(5):
        await tracker.track_lead_change("tenant-1", f"lead-{i}", "updated")

    rows = unread(store, "tenant-1", "lead")
    assert len(rows) == 1
    assert rows[0].count == 5
    assert rows[0].title == "5 Lead Updates"
    assert rows[0].metadata["latest_change"] == "updated"
    assert len(store.system_changes) == 5


@pytest.mark.asyncio
async def test_rollups_are_per_user_and_type(store):
    tracker = ChangeTracker(store)
    await tracker.track_lead_change("tenant-1", "lead-1", "updated")
    await tracker.track_message_change("tenant-1", "wamid.1", "created")
    await tracker.track_lead_change("tenant-2", "lead-2", "updated")

    assert len(unread(store, "tenant-1", "lead")) == 1
    assert len(unread(store, "tenant-1", "message")) == 1
    assert len(unread(store, "tenant-2", "lead")) == 1


@pytest.mark.asyncio
async def test_reading_a_rollup_starts_a_fresh_one(store):
    tracker = ChangeTracker(store)
    for _ in range(3):
        await tracker.track_lead_change("tenant-1", "lead-1", "updated")
    first = unread(store, "tenant-1", "lead")[0]

    await tracker.mark_notification_read(first.id)
    await tracker.track_lead_change("tenant-1", "lead-1", "status_changed")

    rows = unread(store, "tenant-1", "lead")
    assert len(rows) == 1
    assert rows[0].id != first.id
    assert rows[0].count == 1
    assert rows[0].title == "New Lead Update"
    assert store.aggregated[first.id].count == 3


@pytest.mark.asyncio
async def test_concurrent_changes_do_not_lose_increments(store):
    tracker = ChangeTracker(store)
    await asyncio.gather(*(
        tracker.track_lead_change("tenant-1", f"lead-{i}", "updated") for i in range(20)
    ))

    rows = unread(store, "tenant-1", "lead")
    assert len(rows) == 1
    assert rows[0].count == 20


@pytest.mark.asyncio
async def test_mark_all_read(store):
    tracker = ChangeTracker(store)
    await tracker.track_lead_change("tenant-1", "lead-1", "updated")
    await tracker.track_meeting_change("tenant-1", "inv-1", "created")

    assert await tracker.mark_all_notifications_read("tenant-1") == 2
    assert await tracker.get_aggregated_notifications("tenant-1") == []


@pytest.mark.asyncio
async def test_change_statistics(store):
    tracker = ChangeTracker(store)
    await tracker.track_lead_change("tenant-1", "lead-1", "updated")
    await tracker.track_lead_change("tenant-1", "lead-1", "status_changed")
    await tracker.track_message_change("tenant-1", "wamid.1", "created")

    stats = await tracker.get_change_statistics("tenant-1", days=7)

    assert stats["total_changes"] == 3
    assert stats["by_entity_type"] == {"lead": 2, "message": 1}
    assert stats["by_change_type"] == {"updated": 1, "status_changed": 1, "created": 1}
    assert sum(stats["by_day"].values()) == 3


@pytest.mark.asyncio
async def test_recent_changes_and_mark_change_read(store):
    tracker = ChangeTracker(store)
    change = await tracker.track_lead_change("tenant-1", "lead-1", "updated", new_values={"name": "Dana"})

    recent = await tracker.get_recent_changes("tenant-1")
    assert [c.id for c in recent] == [change.id]
    assert recent[0].description == "Lead information updated"

    assert await tracker.mark_change_read(change.id) is True
    assert store.system_changes[0].is_read is True


@pytest.mark.asyncio
async def test_rollup_read_during_an_update_stays_closed(store, monkeypatch):
    tracker = ChangeTracker(store)
    await tracker.track_lead_change("tenant-1", "lead-1", "updated")
    first = unread(store, "tenant-1", "lead")[0]
    real_get = store.get_unread_aggregated

    async def get_then_read(user_id, notification_type):
        row = await real_get(user_id, notification_type)
        if row is not None:
            await store.mark_aggregated_read(row.id, row.last_updated)
        return row

    monkeypatch.setattr(store, "get_unread_aggregated", get_then_read)
    await tracker.track_lead_change("tenant-1", "lead-2", "updated")

    assert store.aggregated[first.id].is_read
    assert store.aggregated[first.id].count == 1
    rows = unread(store, "tenant-1", "lead")
    assert len(rows) == 1
    assert rows[0].id != first.id
    assert rows[0].count == 1


@pytest.mark.asyncio
async def test_change_with_known_id_is_recorded_once(store):
    tracker = ChangeTracker(store)
    change_id = uuid4()

    first = await tracker.track_lead_change("tenant-1", "lead-1", "updated", change_id=change_id)
    again = await tracker.track_lead_change("tenant-1", "lead-1", "updated", change_id=change_id)

    assert first.id == again.id == change_id
    assert len(store.system_changes) == 1
    assert unread(store, "tenant-1", "lead")[0].count == 1
