"""
rotation/admission.py — Listener request log and admission control.

Admission runs a fixed sequence of checks and stops at the first failure:

  blacklist (song id, then category) → active hours → per-song/day
  → same-song gap → per-artist/hour → same-artist gap → per-album/day
  → per-requester/day → per-requester/hour

Counts use rolling windows (24 h / 1 h back from now) and ignore rejected
entries.  A request that passes is either queued at once (auto_accept) or
left pending for an operator.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from rotation import errors
from rotation.errors import InvalidRequestState, MetadataUnavailable, RequestNotFound
from rotation.models import (
    AdmissionResult,
    QueuePosition,
    RequestStatus,
    hour_in_window,
    make_request,
    minutes_between,
    now_local,
    parse_request_status,
    parse_ts,
    request_from_track,
    to_iso,
)

logger = logging.getLogger(__name__)

DAY  = timedelta(hours=24)
HOUR = timedelta(hours=1)


def _norm(value) -> str:
    return (value or "").strip().lower()


def _requester_key(entry: dict) -> str:
    return _norm(entry.get("requester_name")) or _norm(entry.get("requester_ip"))


# ---------------------------------------------------------------------------
# Request log
# ---------------------------------------------------------------------------

class RequestLog:
    """
    Thread-safe log of request submissions.
    Persists to a JSON file after every change when a path is given.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._entries: List[dict] = []
        self._next_id = 1
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r") as f:
            data = json.load(f)
        self._entries = [make_request(e) for e in data.get("requests", [])]
        self._next_id = max((e["id"] for e in self._entries), default=0) + 1

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump({"requests": self._entries}, f, indent=2)

    def add(self, entry: dict) -> dict:
        with self._lock:
            entry = make_request({**entry, "id": self._next_id})
            self._next_id += 1
            self._entries.append(entry)
            self._save()
            return dict(entry)

    def get(self, request_id) -> dict:
        with self._lock:
            for e in self._entries:
                if e["id"] == int(request_id):
                    return dict(e)
        raise RequestNotFound(f"Request {request_id} not found")

    def update(self, request_id, **changes) -> dict:
        with self._lock:
            for e in self._entries:
                if e["id"] == int(request_id):
                    e.update(changes)
                    self._save()
                    return dict(e)
        raise RequestNotFound(f"Request {request_id} not found")

    def by_status(self, status) -> List[dict]:
        status = parse_request_status(status)
        with self._lock:
            return [dict(e) for e in self._entries if e["status"] is status]

    def pending(self) -> List[dict]:
        """Pending requests, oldest first."""
        return self.by_status(RequestStatus.PENDING)

    def history(self, limit: int = 100, offset: int = 0) -> List[dict]:
        """All entries, newest first."""
        with self._lock:
            newest = list(reversed(self._entries))
        return [dict(e) for e in newest[offset:offset + limit]]

    def counted(self, since: datetime, predicate: Callable[[dict], bool]) -> List[dict]:
        """Non-rejected entries requested at or after since that match predicate.

        Entries without a requested_at timestamp are never counted.
        """
        with self._lock:
            out = []
            for e in self._entries:
                if e["status"] is RequestStatus.REJECTED or not predicate(e):
                    continue
                requested_at = parse_ts(e.get("requested_at"))
                if requested_at is not None and requested_at >= since:
                    out.append(dict(e))
            return out

    def last_requested(self, predicate: Callable[[dict], bool]) -> Optional[datetime]:
        with self._lock:
            times = [
                parse_ts(e.get("requested_at")) for e in self._entries
                if e["status"] is not RequestStatus.REJECTED and predicate(e)
            ]
            times = [t for t in times if t is not None]
        return max(times) if times else None

    def mark_played(self, track_id, played_at=None) -> Optional[dict]:
        """Flag the oldest accepted request for this track as played."""
        with self._lock:
            for e in self._entries:
                if e["track_id"] == str(track_id) and e["status"] is RequestStatus.ACCEPTED:
                    e["status"] = RequestStatus.PLAYED
                    e["played_at"] = to_iso(played_at or now_local())
                    self._save()
                    return dict(e)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Admission controller
# ---------------------------------------------------------------------------

class RequestAdmissionController:

    def __init__(self, library, queue, config_store, weights, log: RequestLog = None):
        self.library = library
        self.queue = queue
        self.config_store = config_store
        self.weights = weights
        self.log = log if log is not None else RequestLog()
        # Check-then-record must be atomic or two racing submissions could
        # both squeeze under a limit.
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Policy evaluation
    # ------------------------------------------------------------------

    def evaluate(self, track: dict, requester: dict, policy: dict,
                 now: datetime) -> Optional[Tuple[str, str]]:
        """Return (rule, message) for the first failing check, or None if allowed."""
        track_id = str(track["id"])
        artist   = _norm(track.get("artist"))
        album    = _norm(track.get("album"))
        who      = _requester_key(requester)

        if track_id in policy["blacklisted_song_ids"]:
            return errors.BLACKLIST_SONG, "This song is not requestable."

        for blocked in policy["blacklisted_categories"]:
            for cat in track.get("categories") or []:
                if _norm(blocked) and _norm(blocked) in _norm(cat):
                    return errors.BLACKLIST_CATEGORY, f"Category '{blocked}' is not requestable."

        if policy["active_hours"]:
            start, end = policy["active_hours"]
            if not hour_in_window(now.hour, start, end):
                return errors.ACTIVE_HOURS, (
                    f"Requests only accepted between {start:02d}:00 and {end:02d}:00."
                )

        same_song = lambda e: e["track_id"] == track_id
        count = len(self.log.counted(now - DAY, same_song))
        if count >= policy["max_requests_per_song_per_day"]:
            return errors.SONG_DAY_LIMIT, f"This song has already been requested {count} times today."

        gap = policy["min_minutes_between_same_song"]
        last = self.log.last_requested(same_song) if gap else None
        if last is not None and minutes_between(last, now) < gap:
            wait = int(gap - minutes_between(last, now)) + 1
            return errors.SONG_MIN_GAP, f"Please wait {wait} more minutes before requesting this song again."

        if artist:
            same_artist = lambda e: _norm(e.get("artist")) == artist
            count = len(self.log.counted(now - HOUR, same_artist))
            if count >= policy["max_requests_per_artist_per_hour"]:
                return errors.ARTIST_HOUR_LIMIT, (
                    f"Too many requests for this artist this hour "
                    f"(max {policy['max_requests_per_artist_per_hour']})."
                )

            gap = policy["min_minutes_between_same_artist"]
            last = self.log.last_requested(same_artist) if gap else None
            if last is not None and minutes_between(last, now) < gap:
                wait = int(gap - minutes_between(last, now)) + 1
                return errors.ARTIST_MIN_GAP, (
                    f"Please wait {wait} more minutes before requesting this artist again."
                )

        if album:
            same_album = lambda e: _norm(e.get("album")) == album
            count = len(self.log.counted(now - DAY, same_album))
            if count >= policy["max_requests_per_album_per_day"]:
                return errors.ALBUM_DAY_LIMIT, (
                    f"Too many requests from this album today "
                    f"(max {policy['max_requests_per_album_per_day']})."
                )

        if who:
            same_requester = lambda e: _requester_key(e) == who
            if len(self.log.counted(now - DAY, same_requester)) >= policy["max_requests_per_requester_per_day"]:
                return errors.REQUESTER_DAY_LIMIT, (
                    f"You can only request {policy['max_requests_per_requester_per_day']} songs per day."
                )
            if len(self.log.counted(now - HOUR, same_requester)) >= policy["max_requests_per_requester_per_hour"]:
                return errors.REQUESTER_HOUR_LIMIT, (
                    f"You can only request {policy['max_requests_per_requester_per_hour']} songs per hour."
                )

        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def admit(self, submission: dict, now: datetime = None) -> AdmissionResult:
        """Evaluate a submission and record it as rejected, pending or accepted."""
        now = parse_ts(now) or now_local()
        track_id = submission.get("track_id")
        try:
            track = self.library.get_track(track_id)
        except MetadataUnavailable as exc:
            logger.error("[REQUESTS] Could not load track %s: %s", track_id, exc)
            return AdmissionResult(None, reason=errors.METADATA_UNAVAILABLE, message=str(exc))
        if track is None:
            return AdmissionResult(
                RequestStatus.REJECTED, reason=errors.UNKNOWN_TRACK,
                message=f"Track {track_id} does not exist.",
            )

        policy = self.config_store.load_request_policy()
        with self._lock:
            entry = request_from_track(track, submission, now)
            violation = self.evaluate(track, entry, policy, now)
            if violation:
                rule, message = violation
                entry = self.log.add({
                    **entry,
                    "status":           RequestStatus.REJECTED,
                    "rejection_reason": rule,
                    "message":          message,
                })
                logger.info("[REQUESTS] Rejected %s - %s (%s): %s",
                            track.get("artist"), track.get("title"), rule, message)
                return AdmissionResult(RequestStatus.REJECTED, request=entry, reason=rule, message=message)

            entry = self.log.add(entry)
            if not policy["auto_accept"]:
                logger.info("[REQUESTS] Pending #%s: %s - %s", entry["id"], track.get("artist"), track.get("title"))
                return AdmissionResult(RequestStatus.PENDING, request=entry)
            return self._accept(entry, policy)

    def accept(self, request_id) -> AdmissionResult:
        """Operator accept of a pending request; inserts it into the queue."""
        with self._lock:
            entry = self.log.get(request_id)
            if entry["status"] is not RequestStatus.PENDING:
                raise InvalidRequestState(f"Request {request_id} is {entry['status'].value}, not pending")
            return self._accept(entry, self.config_store.load_request_policy())

    def reject(self, request_id, reason: str = None) -> AdmissionResult:
        with self._lock:
            entry = self.log.get(request_id)
            if entry["status"] is not RequestStatus.PENDING:
                raise InvalidRequestState(f"Request {request_id} is {entry['status'].value}, not pending")
            entry = self.log.update(
                request_id,
                status=RequestStatus.REJECTED,
                rejection_reason=errors.OPERATOR_REJECTED,
                message=reason,
            )
        logger.info("[REQUESTS] Operator rejected #%s", request_id)
        return AdmissionResult(RequestStatus.REJECTED, request=entry,
                               reason=errors.OPERATOR_REJECTED, message=reason)

    def fulfil(self, request_id) -> dict:
        """Accept a pending request picked by a request slot.

        The selection itself places the track in the queue, so only the
        status and weight change here.
        """
        with self._lock:
            entry = self.log.update(request_id, status=RequestStatus.ACCEPTED)
        self._bump_weight(entry["track_id"])
        return entry

    def _accept(self, entry: dict, policy: dict) -> AdmissionResult:
        position = QueuePosition.from_value(policy["queue_position"])
        index = self.queue.enqueue(entry["track_id"], position)
        entry = self.log.update(entry["id"], status=RequestStatus.ACCEPTED, queue_index=index)
        self._bump_weight(entry["track_id"])
        logger.info("[REQUESTS] Accepted #%s at queue index %d", entry["id"], index)
        return AdmissionResult(RequestStatus.ACCEPTED, request=entry, position=index)

    def _bump_weight(self, track_id) -> None:
        delta = self.config_store.load_clockwheel_config()["on_request_increase_weight_by"]
        self.weights.on_requested(track_id, delta)
