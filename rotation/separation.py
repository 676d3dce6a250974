"""
Separation rules - track, album, artist and title minimum gaps, the
artist/album song-count gaps and the per-track play cap.

Each check is independent: a candidate fails if anything sharing that
identity played less than the configured number of minutes ago, or within
the configured number of most recent plays.  A window of 0 disables its
check; a track with no album (or artist, or title) can't fail that check.
"""
import logging
from datetime import datetime, timedelta
from typing import List

from rotation.history import KINDS, PlayHistory

logger = logging.getLogger(__name__)

RULE_FIELDS = {
    "track":  "no_same_track_minutes",
    "album":  "no_same_album_minutes",
    "artist": "no_same_artist_minutes",
    "title":  "no_same_title_minutes",
}

COUNT_RULE_FIELDS = {
    "album":  "no_same_album_songs",
    "artist": "no_same_artist_songs",
}

MAX_PLAYS = "max_plays"

# Order failed checks are reported and relaxed in
RULE_NAMES = KINDS + (MAX_PLAYS,)


def enforcement_active(rules: dict, slot: dict) -> bool:
    """Rules apply only when the master switch AND the slot's flag are both on."""
    return bool(rules.get("enforce_playlist_rotation_rules", True)) and bool(slot.get("enforce_rules", True))


def longest_window_minutes(rules: dict) -> int:
    longest = max(int(rules.get(f, 0) or 0) for f in RULE_FIELDS.values())
    if int(rules.get("max_plays_per_song", 0) or 0) > 0:
        longest = max(longest, int(rules.get("max_plays_window_hours", 0) or 0) * 60)
    return longest


class SeparationRuleEngine:
    """Decides whether a candidate track may air now given the play history."""

    def __init__(self, history: PlayHistory):
        self.history = history

    def failed_rules(self, track: dict, rules: dict, now: datetime) -> List[str]:
        """Names of the checks this track fails, in RULE_NAMES order."""
        failed = []
        for kind in KINDS:
            window = int(rules.get(RULE_FIELDS[kind], 0) or 0)
            since = self.history.minutes_since(kind, track, now) if window > 0 else None
            if since is not None and since < window:
                failed.append(kind)
                continue
            songs = int(rules.get(COUNT_RULE_FIELDS.get(kind, ""), 0) or 0)
            if songs > 0 and self.history.in_last_plays(kind, track, songs):
                failed.append(kind)

        cap = int(rules.get("max_plays_per_song", 0) or 0)
        if cap > 0:
            hours = int(rules.get("max_plays_window_hours", 0) or 0)
            if self.history.plays_since(track, now - timedelta(hours=hours)) >= cap:
                failed.append(MAX_PLAYS)
        return failed

    def passes(self, track: dict, rules: dict, slot: dict, now: datetime) -> bool:
        if not enforcement_active(rules, slot):
            return True
        failed = self.failed_rules(track, rules, now)
        if failed:
            logger.debug(
                "[ROTATION] %s - %s blocked by separation: %s",
                track.get("artist"), track.get("title"), ", ".join(failed),
            )
        return not failed
