"""
Ghost queue — the last N selected track ids, excluded from selection
regardless of how much time has passed.
"""
from collections import deque
from typing import List


class GhostQueue:

    def __init__(self, capacity: int = 1, enabled: bool = True):
        self.enabled = enabled
        self._entries: deque = deque(maxlen=max(0, int(capacity)))

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def configure(self, capacity: int, enabled: bool) -> None:
        """Apply live config; on resize the newest entries are kept."""
        self.enabled = bool(enabled)
        capacity = max(0, int(capacity))
        if capacity != self._entries.maxlen:
            self._entries = deque(self._entries, maxlen=capacity)

    def contains(self, track_id) -> bool:
        if not self.enabled:
            return False
        return str(track_id) in self._entries

    def push(self, track_id) -> None:
        """Append a selection; the oldest entry is evicted once over capacity."""
        if not self.enabled:
            return
        self._entries.append(str(track_id))

    def snapshot(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
