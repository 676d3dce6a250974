"""
rotation/models.py — Canonical field definitions, defaults and enums for the
track, clockwheel slot and request models, plus the outcome types returned by
the engine.

Tracks, slots and request log entries are plain dicts (they round-trip through
JSON files and the HTTP API unchanged).  Anything the engine dispatches on is
an Enum so an unknown value fails at normalisation time rather than deep
inside a selection.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from rotation.errors import ConfigError


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def now_local() -> datetime:
    """Current wall-clock time as an aware datetime in the station's zone."""
    return datetime.now().astimezone()


def parse_ts(value) -> Optional[datetime]:
    """Accept an aware/naive datetime or an ISO string ("Z" allowed); None passes through.

    Naive values are taken to be station-local time.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return parse_ts(dt).isoformat()


def minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SlotKind(str, Enum):
    CATEGORY  = "category"
    DIRECTORY = "directory"
    REQUEST   = "request"


class SelectionMethod(str, Enum):
    WEIGHTED                     = "weighted"
    PRIORITY                     = "priority"
    RANDOM                       = "random"
    MOST_RECENTLY_PLAYED_SONG    = "most_recently_played_song"
    LEAST_RECENTLY_PLAYED_SONG   = "least_recently_played_song"
    MOST_RECENTLY_PLAYED_ARTIST  = "most_recently_played_artist"
    LEAST_RECENTLY_PLAYED_ARTIST = "least_recently_played_artist"
    LEMMING                      = "lemming"
    PLAYLIST_ORDER               = "playlist_order"


class RequestStatus(str, Enum):
    PENDING  = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PLAYED   = "played"


class QueuePositionType(str, Enum):
    NEXT  = "next"
    AFTER = "after"
    END   = "end"


class DjMode(str, Enum):
    """autodj: fully automated.  assisted: fills gaps when the queue runs dry.
    manual: nothing is selected unless an operator asks for it."""
    AUTODJ   = "autodj"
    ASSISTED = "assisted"
    MANUAL   = "manual"


def _enum_value(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"Invalid {field_name} {value!r} (expected one of: {allowed})")


def parse_slot_kind(value) -> SlotKind:
    return _enum_value(SlotKind, value, "slot kind")


def parse_selection_method(value) -> SelectionMethod:
    return _enum_value(SelectionMethod, value, "selection method")


def parse_request_status(value) -> RequestStatus:
    return _enum_value(RequestStatus, value, "request status")


def parse_dj_mode(value) -> DjMode:
    return _enum_value(DjMode, value, "DJ mode")


# ---------------------------------------------------------------------------
# Track defaults  (owned by the metadata store; read-only to the engine
# except for weight, last_played_at and play_count)
# ---------------------------------------------------------------------------

DEFAULT_WEIGHT = 50.0
MIN_WEIGHT     = 0.0
MAX_WEIGHT     = 100.0

TRACK_DEFAULTS = {
    "title":            "",
    "artist":           "",
    "album":            "",
    "categories":       [],     # category membership (names)
    "directory":        "",     # folder path in the library
    "weight":           DEFAULT_WEIGHT,
    "duration_seconds": 0,
    "last_played_at":   None,   # ISO timestamp or None = never played
    "play_count":       0,
    "added_at":         None,
}


def make_track(data: dict) -> dict:
    """Return a new track dict merging defaults with caller data.

    A single "category" string is folded into the "categories" list.  The
    caller's id is kept when supplied (imports from an existing library).
    """
    track = {**TRACK_DEFAULTS, "categories": [], "id": str(uuid.uuid4()),
             "added_at": to_iso(now_local())}
    track.update({k: v for k, v in data.items() if k != "category"})
    category = data.get("category")
    if category and category not in track["categories"]:
        track["categories"] = [*track["categories"], category]
    track["id"] = str(track["id"])
    return track


def clamp_weight(weight) -> float:
    return max(MIN_WEIGHT, min(MAX_WEIGHT, float(weight)))


# ---------------------------------------------------------------------------
# Rotation bands  (weight buckets used for library browsing)
# ---------------------------------------------------------------------------

ROTATION_BANDS = [
    {"label": "Heavy Rotation",  "min": 80, "max": 90},
    {"label": "Medium Rotation", "min": 60, "max": 80},
    {"label": "Light Rotation",  "min": 40, "max": 60},
    {"label": "Rare Rotation",   "min": 20, "max": 40},
    {"label": "No Rotation",     "min": 0,  "max": 20},
]


def band_for_weight(weight) -> Optional[dict]:
    """Return the band whose [min, max) range holds the weight, or None (e.g. above 90)."""
    w = float(weight)
    for band in ROTATION_BANDS:
        if band["min"] <= w < band["max"]:
            return band
    return None


def band_by_label(label: str) -> Optional[dict]:
    wanted = (label or "").strip().lower()
    for band in ROTATION_BANDS:
        if band["label"].lower() == wanted or band["label"].lower().split()[0] == wanted:
            return band
    return None


# ---------------------------------------------------------------------------
# Clockwheel slot defaults
# ---------------------------------------------------------------------------

SLOT_DEFAULTS = {
    "kind":             SlotKind.CATEGORY,
    "target":           "",     # category name, directory path, "" for request slots
    "selection_method": SelectionMethod.WEIGHTED,
    "enforce_rules":    True,
    # Active window: start inclusive, end exclusive.  Both None = all day.
    "start_hour":       None,
    "end_hour":         None,
    # Weekday indices, 0 = Monday … 6 = Sunday.  Empty = every day.
    "active_days":      [],
}


def _optional_hour(value, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        hour = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name} must be an integer hour, got {value!r}")
    if not 0 <= hour <= 23:
        raise ConfigError(f"{field_name} must be in [0, 23], got {hour}")
    return hour


def make_slot(data: dict) -> dict:
    """Return a normalised slot dict; raises ConfigError on invalid values."""
    slot = {**SLOT_DEFAULTS, "active_days": []}
    slot.update(data)
    slot["id"]               = str(slot.get("id") or f"slot-{uuid.uuid4().hex[:8]}")
    slot["kind"]             = parse_slot_kind(slot["kind"])
    slot["selection_method"] = parse_selection_method(slot["selection_method"])
    slot["target"]           = "" if slot["kind"] is SlotKind.REQUEST else str(slot.get("target") or "")
    slot["enforce_rules"]    = bool(slot["enforce_rules"])
    slot["start_hour"]       = _optional_hour(slot.get("start_hour"), "start_hour")
    slot["end_hour"]         = _optional_hour(slot.get("end_hour"), "end_hour")

    days = set()
    for d in slot.get("active_days") or []:
        try:
            day = int(d)
        except (TypeError, ValueError):
            raise ConfigError(f"active_days entries must be weekday indices, got {d!r}")
        if not 0 <= day <= 6:
            raise ConfigError(f"active_days entries must be in [0, 6], got {day}")
        days.add(day)
    slot["active_days"] = sorted(days)
    return slot


def hour_in_window(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """True if hour falls in [start, end).

    A window with either bound missing is treated as absent (always true).
    start > end wraps past midnight (22 → 2 covers 22, 23, 0, 1).
    start == end covers the whole day.
    """
    if start is None or end is None:
        return True
    if start < end:
        return start <= hour < end
    if start > end:
        return hour >= start or hour < end
    return True


def slot_active_at(slot: dict, when: datetime) -> bool:
    days = slot.get("active_days") or []
    if days and when.weekday() not in days:
        return False
    return hour_in_window(when.hour, slot.get("start_hour"), slot.get("end_hour"))


# ---------------------------------------------------------------------------
# Request queue position  (next | after N | end)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueuePosition:
    type: QueuePositionType = QueuePositionType.END
    n: int = 0

    @classmethod
    def next(cls) -> "QueuePosition":
        return cls(QueuePositionType.NEXT)

    @classmethod
    def after(cls, n: int) -> "QueuePosition":
        return cls(QueuePositionType.AFTER, int(n))

    @classmethod
    def end(cls) -> "QueuePosition":
        return cls(QueuePositionType.END)

    @classmethod
    def from_value(cls, value) -> "QueuePosition":
        """Parse {"type": "after", "n": 2}, "next", "end" or an existing QueuePosition."""
        if isinstance(value, QueuePosition):
            return value
        if value is None:
            return cls.end()
        if isinstance(value, str):
            value = {"type": value}
        kind = _enum_value(QueuePositionType, value.get("type", "end"), "queue position")
        n = 0
        if kind is QueuePositionType.AFTER:
            try:
                n = int(value.get("n", 0))
            except (TypeError, ValueError):
                raise ConfigError(f"queue position 'after' needs an integer n, got {value.get('n')!r}")
            if n < 0:
                raise ConfigError(f"queue position 'after' needs n >= 0, got {n}")
        return cls(kind, n)

    def resolve(self, queue_length: int) -> int:
        """Index at which to insert into a queue of the given length."""
        if self.type is QueuePositionType.NEXT:
            return 0
        if self.type is QueuePositionType.AFTER:
            return min(self.n, queue_length)
        return queue_length

    def to_dict(self) -> dict:
        if self.type is QueuePositionType.AFTER:
            return {"type": self.type.value, "n": self.n}
        return {"type": self.type.value}


# ---------------------------------------------------------------------------
# Request log entry defaults
# ---------------------------------------------------------------------------

REQUEST_DEFAULTS = {
    "track_id":           None,
    "title":              None,
    "artist":             None,
    "album":              None,
    "categories":         [],
    "requester_name":     None,
    "requester_platform": None,
    "requester_ip":       None,
    "requested_at":       None,
    "status":             RequestStatus.PENDING,
    "rejection_reason":   None,
    "message":            None,
    "queue_index":        None,
    "played_at":          None,
}


def make_request(data: dict) -> dict:
    entry = {**REQUEST_DEFAULTS, "categories": []}
    entry.update(data)
    entry["status"] = parse_request_status(entry["status"])
    if entry["track_id"] is not None:
        entry["track_id"] = str(entry["track_id"])
    return entry


def request_from_track(track: dict, submission: dict, requested_at: datetime) -> dict:
    return make_request({
        "track_id":           track.get("id"),
        "title":              track.get("title"),
        "artist":             track.get("artist"),
        "album":              track.get("album"),
        "categories":         list(track.get("categories") or []),
        "requester_name":     submission.get("requester_name"),
        "requester_platform": submission.get("requester_platform"),
        "requester_ip":       submission.get("requester_ip"),
        "requested_at":       to_iso(requested_at),
    })


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass
class SelectionOutcome:
    """Result of one selection attempt.

    track_id is None when nothing was chosen; reason then carries a code from
    rotation.errors.  relaxed_rules lists what was dropped to find a track,
    in the order it was dropped ("ghost_queue" first, then the separation
    checks that were blocking candidates).
    """
    track_id: Optional[str] = None
    slot_id: Optional[str] = None
    method: Optional[SelectionMethod] = None
    relaxed: bool = False
    relaxed_rules: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    state: Optional[str] = None
    queue_index: Optional[int] = None
    request_id: Optional[int] = None

    @property
    def selected(self) -> bool:
        return self.track_id is not None

    def to_dict(self) -> dict:
        return {
            "track_id":      self.track_id,
            "slot_id":       self.slot_id,
            "method":        self.method.value if self.method else None,
            "relaxed":       self.relaxed,
            "relaxed_rules": list(self.relaxed_rules),
            "reason":        self.reason,
            "state":         self.state,
            "queue_index":   self.queue_index,
            "request_id":    self.request_id,
        }


@dataclass
class AdmissionResult:
    status: Optional[RequestStatus]
    request: Optional[dict] = None
    position: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status is RequestStatus.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.status is not RequestStatus.ACCEPTED and self.status is not RequestStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "status":   self.status.value if self.status else None,
            "position": self.position,
            "reason":   self.reason,
            "message":  self.message,
            "request":  self.request,
        }
