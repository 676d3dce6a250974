"""
rotation/rules.py — Clockwheel rules, clockwheel config and request policy,
with the station defaults and merge helpers.
"""

import copy

from rotation.errors import ConfigError
from rotation.models import QueuePosition, make_slot

DEFAULT_RULES = {
    # --- Separation (minutes; 0 = disabled) ---
    "no_same_album_minutes":  15,
    "no_same_artist_minutes": 8,
    "no_same_title_minutes":  15,    # catches covers/re-recordings under a different id
    "no_same_track_minutes":  180,

    # --- Separation (plays; 0 = disabled) ---
    "no_same_artist_songs": 0,
    "no_same_album_songs":  0,

    # --- Per-track play cap: at most N plays in any rolling window (0 = no cap) ---
    "max_plays_per_song":     0,
    "max_plays_window_hours": 24,

    # --- Ghost queue (last N selections excluded regardless of elapsed time) ---
    "keep_songs_in_queue": 1,
    "use_ghost_queue":     False,

    # Performance hint for hosts that prefetch; not used for correctness
    "cache_queue_count": True,

    # Master switch; a slot must also have enforce_rules for checks to apply
    "enforce_playlist_rotation_rules": True,
}

DEFAULT_CLOCKWHEEL = {
    "rules": DEFAULT_RULES,
    "slots": [
        {
            "id":               "slot-1",
            "kind":             "category",
            "target":           "",
            "selection_method": "weighted",
            "enforce_rules":    True,
            "start_hour":       None,
            "end_hour":         None,
            "active_days":      [],
        },
    ],

    # --- Weight evolution (0 = no change) ---
    "on_play_reduce_weight_by":      0,
    "on_request_increase_weight_by": 0,

    # Promotes per-candidate filter decisions to INFO
    "verbose_logging": False,

    # Slot used when no slot's day/hour window matches (None = report no slot)
    "default_slot_id": None,

    # Lemming: a just-played track has weight 1, recovering linearly to 100
    # once this many minutes have passed since its last play
    "lemming_lookback_minutes": 240,
}

DEFAULT_REQUEST_POLICY = {
    # --- Song limits ---
    "max_requests_per_song_per_day":  3,
    "min_minutes_between_same_song":  60,

    # --- Artist limits ---
    "max_requests_per_artist_per_hour": 2,
    "min_minutes_between_same_artist":  30,

    # --- Album limits ---
    "max_requests_per_album_per_day": 5,

    # --- Requester limits ---
    "max_requests_per_requester_per_day":  5,
    "max_requests_per_requester_per_hour": 2,

    # --- Queue position for accepted requests: next | after N | end ---
    "queue_position": {"type": "end"},

    # --- Blacklists ---
    "blacklisted_song_ids":   [],
    "blacklisted_categories": [],

    # [start_hour, end_hour) when requests are accepted; None = always
    "active_hours": None,

    "auto_accept": False,
}

_RULE_MINUTE_FIELDS = (
    "no_same_album_minutes",
    "no_same_artist_minutes",
    "no_same_title_minutes",
    "no_same_track_minutes",
)

_RULE_COUNT_FIELDS = (
    "no_same_artist_songs",
    "no_same_album_songs",
    "max_plays_per_song",
    "max_plays_window_hours",
)

_POLICY_COUNT_FIELDS = (
    "max_requests_per_song_per_day",
    "min_minutes_between_same_song",
    "max_requests_per_artist_per_hour",
    "min_minutes_between_same_artist",
    "max_requests_per_album_per_day",
    "max_requests_per_requester_per_day",
    "max_requests_per_requester_per_hour",
)


def _non_negative_int(value, name: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if n < 0:
        raise ConfigError(f"{name} must be >= 0, got {n}")
    return n


def _non_negative_number(value, name: str) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if n < 0:
        raise ConfigError(f"{name} must be >= 0, got {n}")
    return n


def merge_rules(overrides: dict) -> dict:
    """Return DEFAULT_RULES with caller-supplied overrides applied (shallow merge)."""
    rules = {**DEFAULT_RULES}
    rules.update(overrides or {})
    for key in _RULE_MINUTE_FIELDS + _RULE_COUNT_FIELDS:
        rules[key] = _non_negative_int(rules[key], key)
    rules["keep_songs_in_queue"] = _non_negative_int(rules["keep_songs_in_queue"], "keep_songs_in_queue")
    for key in ("use_ghost_queue", "cache_queue_count", "enforce_playlist_rotation_rules"):
        rules[key] = bool(rules[key])
    return rules


def merge_clockwheel(overrides: dict) -> dict:
    """Return a full, validated clockwheel config.

    rules are merged key-by-key over DEFAULT_RULES; slots replace the default
    slot list wholesale.
    """
    overrides = overrides or {}
    config = copy.deepcopy(DEFAULT_CLOCKWHEEL)
    config.update({k: v for k, v in overrides.items() if k != "rules"})
    config["rules"] = merge_rules(overrides.get("rules") or {})
    config["slots"] = [make_slot(s) for s in (config.get("slots") or [])]
    for key in ("on_play_reduce_weight_by", "on_request_increase_weight_by"):
        config[key] = _non_negative_number(config[key], key)
    config["lemming_lookback_minutes"] = max(
        1, _non_negative_int(config["lemming_lookback_minutes"], "lemming_lookback_minutes")
    )
    config["verbose_logging"] = bool(config["verbose_logging"])
    validate_clockwheel(config)
    return config


def validate_clockwheel(config: dict) -> None:
    """Raise ConfigError unless the clockwheel has at least one slot, unique
    slot ids, and a default_slot_id (if set) that names one of them."""
    slots = config.get("slots") or []
    if not slots:
        raise ConfigError("Clockwheel must contain at least one slot")
    ids = [s["id"] for s in slots]
    if len(set(ids)) != len(ids):
        raise ConfigError("Clockwheel slot ids must be unique")
    default_id = config.get("default_slot_id")
    if default_id is not None and default_id not in ids:
        raise ConfigError(f"default_slot_id {default_id!r} does not name a slot")


def find_slot(config: dict, slot_id: str):
    for slot in config.get("slots") or []:
        if slot["id"] == slot_id:
            return slot
    return None


def merge_request_policy(overrides: dict) -> dict:
    """Return DEFAULT_REQUEST_POLICY with overrides applied and normalised.

    queue_position becomes a QueuePosition; active_hours a (start, end) tuple
    or None.
    """
    policy = copy.deepcopy(DEFAULT_REQUEST_POLICY)
    policy.update(overrides or {})
    for key in _POLICY_COUNT_FIELDS:
        policy[key] = _non_negative_int(policy[key], key)
    policy["queue_position"] = QueuePosition.from_value(policy["queue_position"])
    policy["blacklisted_song_ids"] = [str(s) for s in policy.get("blacklisted_song_ids") or []]
    policy["blacklisted_categories"] = [str(c) for c in policy.get("blacklisted_categories") or []]
    policy["auto_accept"] = bool(policy["auto_accept"])

    hours = policy.get("active_hours")
    if hours:
        try:
            start, end = (int(h) for h in hours)
        except (TypeError, ValueError):
            raise ConfigError(f"active_hours must be [start_hour, end_hour], got {hours!r}")
        if not (0 <= start <= 23 and 0 <= end <= 24):
            raise ConfigError(f"active_hours out of range: {hours!r}")
        policy["active_hours"] = (start, end)
    else:
        policy["active_hours"] = None
    return policy


def policy_to_dict(policy: dict) -> dict:
    """JSON-safe copy of a merged request policy."""
    out = dict(policy)
    out["queue_position"] = QueuePosition.from_value(policy["queue_position"]).to_dict()
    out["active_hours"] = list(policy["active_hours"]) if policy.get("active_hours") else None
    return out


def clockwheel_to_dict(config: dict) -> dict:
    """JSON-safe copy of a merged clockwheel config."""
    out = dict(config)
    out["rules"] = dict(config["rules"])
    out["slots"] = [
        {**s, "kind": s["kind"].value, "selection_method": s["selection_method"].value}
        for s in config["slots"]
    ]
    return out
