"""
rotation/store.py — JSON-file backed track store and config store.

Tracks live one per file (<id>.json) in a directory; the clockwheel config
and the request policy are one file each.  A missing or unreadable config
file yields the defaults; an unreadable track directory raises
MetadataUnavailable.
"""

import json
import logging
import os
import threading
from typing import List, Optional

from rotation.errors import ConfigError, DuplicateTrack, InvalidTrackId, MetadataUnavailable
from rotation.models import make_track, to_iso
from rotation.ports import ConfigStore, MetadataPort, in_category, in_directory
from rotation.rules import (
    clockwheel_to_dict,
    merge_clockwheel,
    merge_request_policy,
    policy_to_dict,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------

def _load_all(directory: str) -> list:
    items = []
    for fname in sorted(os.listdir(directory)):
        if fname.endswith(".json"):
            with open(os.path.join(directory, fname)) as f:
                items.append(json.load(f))
    return items


def _load_one(directory: str, item_id: str):
    path = os.path.join(directory, f"{item_id}.json")
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)


def _save(directory: str, item: dict) -> None:
    with open(os.path.join(directory, f"{item['id']}.json"), "w") as f:
        json.dump(item, f, indent=2)


def _safe_id(track_id) -> bool:
    """True if track_id can name a file inside the track directory."""
    text = str(track_id or "")
    return bool(text) and "/" not in text and os.sep not in text and text not in {".", ".."}


def _sort_key(track: dict):
    # Stable enumeration order: the order tracks were added to the library
    return (track.get("added_at") or "", str(track.get("id")))


# ---------------------------------------------------------------------------
# Track store
# ---------------------------------------------------------------------------

class JsonLibrary(MetadataPort):

    def __init__(self, directory: str):
        self.directory = directory
        self._lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

    def _all(self) -> List[dict]:
        try:
            tracks = _load_all(self.directory)
        except (OSError, json.JSONDecodeError) as exc:
            raise MetadataUnavailable(f"Cannot read tracks from {self.directory}: {exc}") from exc
        return sorted(tracks, key=_sort_key)

    def all_tracks(self) -> List[dict]:
        return self._all()

    def add(self, data: dict) -> dict:
        """Create a track; a caller-supplied id must be a plain file name not already used."""
        track = make_track(data)
        if not _safe_id(track["id"]):
            raise InvalidTrackId(f"Invalid track id {track['id']!r}")
        with self._lock:
            if os.path.exists(os.path.join(self.directory, f"{track['id']}.json")):
                raise DuplicateTrack(f"Track {track['id']} already exists")
            try:
                _save(self.directory, track)
            except OSError as exc:
                raise MetadataUnavailable(f"Cannot write track {track['id']}: {exc}") from exc
        return track

    def get_track(self, track_id) -> Optional[dict]:
        if not _safe_id(track_id):
            return None
        try:
            return _load_one(self.directory, str(track_id))
        except (OSError, json.JSONDecodeError) as exc:
            raise MetadataUnavailable(f"Cannot read track {track_id}: {exc}") from exc

    def get_tracks_in_category(self, category: str) -> List[dict]:
        return [t for t in self._all() if in_category(t, category)]

    def get_tracks_in_directory(self, path: str) -> List[dict]:
        return [t for t in self._all() if in_directory(t, path)]

    def get_tracks_by_weight_range(self, min_weight: float, max_weight: float) -> List[dict]:
        return [t for t in self._all() if min_weight <= float(t.get("weight", 0)) <= max_weight]

    def _update(self, track_id, **changes) -> None:
        with self._lock:
            track = self.get_track(track_id)
            if track is None:
                raise MetadataUnavailable(f"Track {track_id} vanished from {self.directory}")
            track.update(changes)
            try:
                _save(self.directory, track)
            except OSError as exc:
                raise MetadataUnavailable(f"Cannot write track {track_id}: {exc}") from exc

    def update_weight(self, track_id, weight: float) -> None:
        self._update(track_id, weight=weight)

    def update_last_played(self, track_id, played_at) -> None:
        with self._lock:
            track = self.get_track(track_id)
            if track is None:
                raise MetadataUnavailable(f"Track {track_id} vanished from {self.directory}")
            track["last_played_at"] = to_iso(played_at)
            track["play_count"] = (track.get("play_count") or 0) + 1
            try:
                _save(self.directory, track)
            except OSError as exc:
                raise MetadataUnavailable(f"Cannot write track {track_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Config store
# ---------------------------------------------------------------------------

class JsonConfigStore(ConfigStore):

    def __init__(self, clockwheel_file: str, request_policy_file: str):
        self.clockwheel_file = clockwheel_file
        self.request_policy_file = request_policy_file

    def _read(self, path: str) -> dict:
        if not os.path.exists(path):
            return {}
        try:
            with open(path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)
            return {}

    def _write(self, path: str, data: dict) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def load_clockwheel_config(self) -> dict:
        stored = self._read(self.clockwheel_file)
        try:
            return merge_clockwheel(stored)
        except ConfigError as exc:
            logger.warning("Stored clockwheel config invalid (%s); using defaults", exc)
            return merge_clockwheel({})

    def load_request_policy(self) -> dict:
        stored = self._read(self.request_policy_file)
        try:
            return merge_request_policy(stored)
        except ConfigError as exc:
            logger.warning("Stored request policy invalid (%s); using defaults", exc)
            return merge_request_policy({})

    def save_clockwheel_config(self, data: dict) -> dict:
        """Validate and persist; raises ConfigError without touching the file."""
        config = merge_clockwheel(data)
        self._write(self.clockwheel_file, clockwheel_to_dict(config))
        return config

    def save_request_policy(self, data: dict) -> dict:
        policy = merge_request_policy(data)
        self._write(self.request_policy_file, policy_to_dict(policy))
        return policy
