"""
rotation/scheduler.py — Which clockwheel slot is due.

A slot is active when today's weekday is in its active_days (empty = every
day) and the current hour is inside its window.  The due slot is the first
active slot after the last-used one in declaration order, wrapping around.
"""

import logging
from datetime import datetime
from typing import List, Optional

from rotation.models import slot_active_at

logger = logging.getLogger(__name__)


class SlotScheduler:

    def __init__(self):
        self.last_slot_id: Optional[str] = None
        self._active_ids: Optional[tuple] = None

    def active_slots(self, slots: List[dict], now: datetime) -> List[dict]:
        return [s for s in slots if slot_active_at(s, now)]

    def due_slots(self, slots: List[dict], now: datetime) -> List[dict]:
        """Active slots in rotation order, starting with the due one."""
        if not slots:
            return []
        ids = [s["id"] for s in slots]
        start = 0
        if self.last_slot_id in ids:
            start = ids.index(self.last_slot_id) + 1
        ordered = [slots[(start + i) % len(slots)] for i in range(len(slots))]
        return [s for s in ordered if slot_active_at(s, now)]

    def next_due_slot(self, slots: List[dict], now: datetime) -> Optional[dict]:
        """The due slot, or None when no slot matches the current day and hour."""
        due = self.due_slots(slots, now)
        return due[0] if due else None

    def mark_used(self, slot_id: str) -> None:
        self.last_slot_id = slot_id

    def on_hour_tick(self, slots: List[dict], now: datetime) -> bool:
        """Restart the rotation at the first active slot when the active set changes.

        Returns True if the cursor was reset.
        """
        active = tuple(s["id"] for s in self.active_slots(slots, now))
        changed = self._active_ids is not None and active != self._active_ids
        self._active_ids = active
        if changed:
            logger.info("[SCHEDULER] Active slots changed at %02d:00 -> %s", now.hour, ", ".join(active) or "none")
            self.last_slot_id = None
        return changed
