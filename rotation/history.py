"""
History tracking for the rotation engine.
Tracks when each track, artist, album and title was last played so the
separation rules and the recency-based selection methods can ask
"how long ago?", and keeps the recent play sequence for the rules that
count plays instead of minutes.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

from rotation.models import minutes_between, parse_ts

KINDS = ("track", "album", "artist", "title")

# Plays remembered for the count-based rules
RECENT_PLAYS = 500


def _artist_key(track: dict) -> str:
    return (track.get("artist") or "").strip().lower()


def _album_key(track: dict) -> str:
    return (track.get("album") or "").strip().lower()


def _title_key(track: dict) -> str:
    return (track.get("title") or "").strip().lower()


def _track_key(track: dict) -> str:
    return str(track.get("id") or "")


_KEY_FUNCS = {
    "track":  _track_key,
    "album":  _album_key,
    "artist": _artist_key,
    "title":  _title_key,
}


def history_key(kind: str, track: dict) -> str:
    """Normalised identity of a track for one separation kind ("" = no identity)."""
    return _KEY_FUNCS[kind](track)


@dataclass
class PlayHistory:
    """
    Most recent play time per track id, artist, album and title, plus the
    sequence of plays this engine recorded (newest last).

    Library last_played_at values folded in by observe() only move the
    "most recent" times; they are not plays in the sequence, since the
    library does not say what else aired in between.
    """
    plays: Dict[str, Dict[str, datetime]] = field(
        default_factory=lambda: {kind: {} for kind in KINDS}
    )
    recent: Deque[Dict[str, str]] = field(default_factory=lambda: deque(maxlen=RECENT_PLAYS))
    track_times: Dict[str, List[datetime]] = field(default_factory=dict)

    def _bump(self, kind: str, key: str, played_at: datetime) -> None:
        if not key:
            return
        current = self.plays[kind].get(key)
        if current is None or played_at > current:
            self.plays[kind][key] = played_at

    def _bump_all(self, track: dict, played_at: datetime) -> None:
        for kind in KINDS:
            self._bump(kind, history_key(kind, track), played_at)

    def record_play(self, track: dict, played_at) -> None:
        """Record that a track was played (selected or requested for air) at played_at."""
        played_at = parse_ts(played_at)
        self._bump_all(track, played_at)
        self.recent.append({kind: history_key(kind, track) for kind in KINDS})
        track_id = history_key("track", track)
        if track_id:
            self.track_times.setdefault(track_id, []).append(played_at)

    def observe(self, track: dict) -> None:
        """Fold a library record's last_played_at into the history.

        Keeps the history consistent with plays that happened before this
        engine started, or on another output.
        """
        played_at = parse_ts(track.get("last_played_at"))
        if played_at is not None:
            self._bump_all(track, played_at)

    def last_played(self, kind: str, track: dict) -> Optional[datetime]:
        key = history_key(kind, track)
        if not key:
            return None
        return self.plays[kind].get(key)

    def minutes_since(self, kind: str, track: dict, now: datetime) -> Optional[float]:
        """How many minutes since anything sharing this track's identity played?"""
        last = self.last_played(kind, track)
        if last is None:
            return None
        return minutes_between(last, now)

    def in_last_plays(self, kind: str, track: dict, n: int) -> bool:
        """True if anything sharing this track's identity is among the last n plays."""
        key = history_key(kind, track)
        if not key or n <= 0:
            return False
        window = list(self.recent)[-n:]
        return any(p[kind] == key for p in window)

    def plays_since(self, track: dict, since: datetime) -> int:
        """How many recorded plays of this track id fall at or after since."""
        times = self.track_times.get(history_key("track", track)) or []
        return sum(1 for t in times if t >= since)

    def prune(self, cutoff: datetime) -> int:
        """Drop "most recent" entries and per-track play times older than cutoff.

        Returns how many "most recent" entries were removed.  The play
        sequence is bounded by RECENT_PLAYS and is left alone.  Pruning caps
        memory only: observe() puts back anything the library still reports.
        """
        removed = 0
        for kind in KINDS:
            stale = [k for k, v in self.plays[kind].items() if v < cutoff]
            for k in stale:
                del self.plays[kind][k]
            removed += len(stale)
        for track_id in list(self.track_times):
            kept = [t for t in self.track_times[track_id] if t >= cutoff]
            if kept:
                self.track_times[track_id] = kept
            else:
                del self.track_times[track_id]
        return removed

    def __len__(self) -> int:
        return len(self.plays["track"])
