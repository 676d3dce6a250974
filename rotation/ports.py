"""
rotation/ports.py — Interfaces to the engine's collaborators, plus in-memory
implementations used by the CLI and the tests.

  MetadataPort   track store: read attributes, write weight / last-played
  QueueSink      the playout queue the engine feeds
  ConfigStore    where the clockwheel config and request policy live
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from rotation.models import QueuePosition, make_track, to_iso
from rotation.rules import merge_clockwheel, merge_request_policy


class MetadataPort(ABC):
    """Track metadata store.  Implementations raise MetadataUnavailable on failure."""

    @abstractmethod
    def get_track(self, track_id) -> Optional[dict]:
        """Return the track record, or None if no such track exists."""

    @abstractmethod
    def get_tracks_in_category(self, category: str) -> List[dict]:
        """Tracks in a category, in the store's enumeration order."""

    @abstractmethod
    def get_tracks_in_directory(self, path: str) -> List[dict]:
        """Tracks in a directory, in the store's enumeration order."""

    @abstractmethod
    def get_tracks_by_weight_range(self, min_weight: float, max_weight: float) -> List[dict]:
        """Tracks whose weight lies in [min_weight, max_weight]."""

    @abstractmethod
    def update_weight(self, track_id, weight: float) -> None:
        """Persist a new weight for the track."""

    @abstractmethod
    def update_last_played(self, track_id, played_at) -> None:
        """Persist last_played_at and bump play_count."""


class QueueSink(ABC):

    @abstractmethod
    def enqueue(self, track_id, position: QueuePosition) -> int:
        """Insert the track at the position; return the index it landed at."""

    @abstractmethod
    def snapshot(self) -> List[str]:
        """Track ids currently waiting, front first."""


class ConfigStore(ABC):

    @abstractmethod
    def load_clockwheel_config(self) -> dict:
        """Return a merged clockwheel config (see rules.merge_clockwheel)."""

    @abstractmethod
    def load_request_policy(self) -> dict:
        """Return a merged request policy (see rules.merge_request_policy)."""


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

def in_directory(track: dict, path: str) -> bool:
    directory = (track.get("directory") or "").rstrip("/\\")
    path = (path or "").rstrip("/\\")
    if not path:
        return True
    return directory == path or directory.startswith(path + "/") or directory.startswith(path + "\\")


def in_category(track: dict, category: str) -> bool:
    if not category or category == "*":
        return True
    wanted = category.strip().lower()
    return any((c or "").strip().lower() == wanted for c in track.get("categories") or [])


class InMemoryLibrary(MetadataPort):
    """Dict-backed track store.  Enumeration order is insertion order."""

    def __init__(self, tracks: Iterable[dict] = ()):
        self._lock = threading.Lock()
        self._tracks = {}
        for t in tracks:
            self.add(t)

    def add(self, data: dict) -> dict:
        track = make_track(data)
        with self._lock:
            self._tracks[track["id"]] = track
        return copy.deepcopy(track)

    def all_tracks(self) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tracks.values()]

    def _select(self, predicate) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tracks.values() if predicate(t)]

    def get_track(self, track_id) -> Optional[dict]:
        with self._lock:
            track = self._tracks.get(str(track_id))
            return copy.deepcopy(track) if track else None

    def get_tracks_in_category(self, category: str) -> List[dict]:
        return self._select(lambda t: in_category(t, category))

    def get_tracks_in_directory(self, path: str) -> List[dict]:
        return self._select(lambda t: in_directory(t, path))

    def get_tracks_by_weight_range(self, min_weight: float, max_weight: float) -> List[dict]:
        return self._select(lambda t: min_weight <= float(t.get("weight", 0)) <= max_weight)

    def update_weight(self, track_id, weight: float) -> None:
        with self._lock:
            self._tracks[str(track_id)]["weight"] = weight

    def update_last_played(self, track_id, played_at) -> None:
        with self._lock:
            track = self._tracks[str(track_id)]
            track["last_played_at"] = to_iso(played_at)
            track["play_count"] = (track.get("play_count") or 0) + 1


class PlayoutQueue(QueueSink):

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: List[str] = []

    def enqueue(self, track_id, position: QueuePosition = None) -> int:
        position = QueuePosition.from_value(position)
        with self._lock:
            index = position.resolve(len(self._queue))
            self._queue.insert(index, str(track_id))
            return index

    def dequeue(self) -> Optional[str]:
        with self._lock:
            if not self._queue:
                return None
            return self._queue.pop(0)

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


class StaticConfigStore(ConfigStore):
    """Holds configs in memory; save_* validate before replacing."""

    def __init__(self, clockwheel: dict = None, request_policy: dict = None):
        self._lock = threading.Lock()
        self._clockwheel = merge_clockwheel(clockwheel or {})
        self._policy = merge_request_policy(request_policy or {})

    def load_clockwheel_config(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._clockwheel)

    def load_request_policy(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._policy)

    def save_clockwheel_config(self, data: dict) -> dict:
        config = merge_clockwheel(data)
        with self._lock:
            self._clockwheel = config
        return copy.deepcopy(config)

    def save_request_policy(self, data: dict) -> dict:
        policy = merge_request_policy(data)
        with self._lock:
            self._policy = policy
        return copy.deepcopy(policy)
