"""
Tests for rotation.scheduler.SlotScheduler.
"""
from datetime import datetime, timezone

from rotation.models import make_slot
from rotation.scheduler import SlotScheduler

# 2024-06-03 is a Monday
MONDAY    = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)
SATURDAY  = datetime(2024, 6, 8, 10, 0, tzinfo=timezone.utc)


def _slots(*specs):
    return [make_slot(s) for s in specs]


def test_weekend_slot_skipped_on_monday_whatever_the_hour():
    slots = _slots({"id": "weekend", "active_days": [5, 6]})
    sched = SlotScheduler()
    for hour in (0, 10, 23):
        assert sched.next_due_slot(slots, MONDAY.replace(hour=hour)) is None
    assert sched.next_due_slot(slots, SATURDAY)["id"] == "weekend"


def test_hour_window_limits_slot():
    slots = _slots({"id": "morning", "start_hour": 6, "end_hour": 10})
    sched = SlotScheduler()
    assert sched.next_due_slot(slots, MONDAY.replace(hour=9))["id"] == "morning"
    assert sched.next_due_slot(slots, MONDAY) is None


def test_overnight_window_wraps():
    slots = _slots({"id": "overnight", "start_hour": 22, "end_hour": 4})
    sched = SlotScheduler()
    assert sched.next_due_slot(slots, MONDAY.replace(hour=23))["id"] == "overnight"
    assert sched.next_due_slot(slots, MONDAY.replace(hour=3))["id"] == "overnight"
    assert sched.next_due_slot(slots, MONDAY.replace(hour=12)) is None


def test_rotation_advances_in_declaration_order():
    slots = _slots({"id": "a"}, {"id": "b"}, {"id": "c"})
    sched = SlotScheduler()
    seen = []
    for _ in range(4):
        slot = sched.next_due_slot(slots, MONDAY)
        seen.append(slot["id"])
        sched.mark_used(slot["id"])
    assert seen == ["a", "b", "c", "a"]


def test_rotation_skips_inactive_slots():
    slots = _slots({"id": "a"}, {"id": "weekend", "active_days": [5, 6]}, {"id": "c"})
    sched = SlotScheduler()
    sched.mark_used("a")
    assert [s["id"] for s in sched.due_slots(slots, MONDAY)] == ["c", "a"]


def test_unknown_last_slot_starts_from_top():
    slots = _slots({"id": "a"}, {"id": "b"})
    sched = SlotScheduler()
    sched.mark_used("removed-slot")
    assert sched.next_due_slot(slots, MONDAY)["id"] == "a"


def test_hour_tick_resets_cursor_when_active_set_changes():
    slots = _slots(
        {"id": "morning", "start_hour": 6,  "end_hour": 12},
        {"id": "any"},
        {"id": "evening", "start_hour": 18, "end_hour": 23},
    )
    sched = SlotScheduler()
    assert sched.on_hour_tick(slots, MONDAY) is False
    sched.mark_used("morning")

    assert sched.on_hour_tick(slots, MONDAY.replace(hour=11)) is False
    assert sched.last_slot_id == "morning"

    assert sched.on_hour_tick(slots, MONDAY.replace(hour=18)) is True
    assert sched.last_slot_id is None
    assert sched.next_due_slot(slots, MONDAY.replace(hour=18))["id"] == "any"
