"""
rotation/audit.py — Check a recorded play sequence against the separation
rules, the per-track play cap and the ghost queue.
"""
from collections import Counter
from datetime import timedelta

from rotation.history import KINDS, history_key
from rotation.models import minutes_between, parse_ts
from rotation.rules import DEFAULT_RULES
from rotation.separation import COUNT_RULE_FIELDS, RULE_FIELDS


def audit_plays(plays: list, rules: dict = None) -> dict:
    """
    Validate a play sequence (oldest first) against separation rules.

    Args:
        plays: list of dicts with track id ("id" or "track_id"), artist,
               album, title and played_at.  Entries flagged "relaxed" are
               still checked; their violations are reported as warnings.
        rules: clockwheel rules; falls back to DEFAULT_RULES if None.

    Returns:
        {
          "valid":      bool,
          "violations": [...],
          "stats":      {...},
        }
    """
    if rules is None:
        rules = DEFAULT_RULES

    violations: list = []
    ghost_size = int(rules.get("keep_songs_in_queue", 0)) if rules.get("use_ghost_queue") else 0
    cap        = int(rules.get("max_plays_per_song", 0) or 0)
    cap_hours  = int(rules.get("max_plays_window_hours", 0) or 0)

    normalised = []
    for p in plays:
        normalised.append({**p, "id": str(p.get("id") or p.get("track_id") or "")})

    for i, play in enumerate(normalised):
        played_at = parse_ts(play.get("played_at"))
        severity  = "warning" if play.get("relaxed") else "error"

        # --- Time-based separation ---
        for kind in KINDS:
            window = int(rules.get(RULE_FIELDS[kind], 0) or 0)
            key    = history_key(kind, play)
            if window <= 0 or not key or played_at is None:
                continue
            for j in range(i - 1, -1, -1):
                prev = normalised[j]
                if history_key(kind, prev) != key:
                    continue
                prev_at = parse_ts(prev.get("played_at"))
                if prev_at is None:
                    continue
                gap = minutes_between(prev_at, played_at)
                if gap < window:
                    violations.append({
                        "position": i + 1,
                        "type":     f"{kind}_separation",
                        "severity": severity,
                        "message":  (
                            f"'{play.get('title')}' at play {i + 1} shares its {kind} with play "
                            f"{j + 1} (gap: {gap:.0f} min, rule: >={window} min)"
                        ),
                    })
                break

        # --- Play-count separation ---
        for kind, field in COUNT_RULE_FIELDS.items():
            songs = int(rules.get(field, 0) or 0)
            key   = history_key(kind, play)
            if songs <= 0 or not key:
                continue
            for j in range(i - 1, max(-1, i - songs - 1), -1):
                if history_key(kind, normalised[j]) == key:
                    violations.append({
                        "position": i + 1,
                        "type":     f"{kind}_song_separation",
                        "severity": severity,
                        "message":  (
                            f"'{play.get('title')}' at play {i + 1} shares its {kind} with play "
                            f"{j + 1} ({i - j} plays apart, rule: not within {songs} plays)"
                        ),
                    })
                    break

        # --- Per-track play cap ---
        if cap and played_at is not None:
            since = played_at - timedelta(hours=cap_hours)
            earlier = [
                q for q in normalised[:i]
                if q["id"] == play["id"]
                and parse_ts(q.get("played_at")) is not None
                and parse_ts(q.get("played_at")) >= since
            ]
            if len(earlier) >= cap:
                violations.append({
                    "position": i + 1,
                    "type":     "max_plays",
                    "severity": severity,
                    "message":  (
                        f"'{play.get('title')}' at play {i + 1} is play {len(earlier) + 1} "
                        f"within {cap_hours} h (max {cap})"
                    ),
                })

        # --- Ghost queue ---
        if ghost_size:
            recent = [normalised[j]["id"] for j in range(max(0, i - ghost_size), i)]
            if play["id"] in recent:
                violations.append({
                    "position": i + 1,
                    "type":     "ghost_queue",
                    "severity": severity,
                    "message":  f"'{play.get('title')}' at play {i + 1} repeats within the last {ghost_size} selections",
                })

    # --- Stats ---
    artists = Counter(
        (p.get("artist") or "").strip() for p in normalised if (p.get("artist") or "").strip()
    )
    errors_ct   = sum(1 for v in violations if v["severity"] == "error")
    warnings_ct = sum(1 for v in violations if v["severity"] == "warning")

    stats = {
        "total_plays":    len(normalised),
        "unique_tracks":  len({p["id"] for p in normalised}),
        "unique_artists": len(artists),
        "top_artists":    dict(artists.most_common(5)),
        "relaxed_plays":  sum(1 for p in normalised if p.get("relaxed")),
        "errors":         errors_ct,
        "warnings":       warnings_ct,
    }

    return {
        "valid":      errors_ct == 0,
        "violations": violations,
        "stats":      stats,
    }
