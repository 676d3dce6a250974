"""
rotation/selector.py — Candidate selection per clockwheel slot.

  weighted       probability proportional to weight; all-zero → uniform random
  priority       highest weight; ties → oldest last play (never played first)
  random         uniform over the eligible set
  most/least_recently_played_song    order by the track's last play
  most/least_recently_played_artist  order by the artist's last play anywhere
                                     in the library
  lemming        weighted-random, weight = max(1, 100 - recency penalty);
                 the penalty falls linearly from 100 to 0 over the lookback
  playlist_order strict walk over the slot's enumeration order; the cursor
                 survives between calls

All randomness comes from the injected random.Random, so a fixed seed
reproduces a run.  Every deterministic tie resolves to the candidate that
comes first in the slot's enumeration order.
"""

import logging
import random
from datetime import datetime
from typing import List, Optional, Tuple

from rotation.history import PlayHistory
from rotation.models import DEFAULT_WEIGHT, SelectionMethod, SlotKind, minutes_between

logger = logging.getLogger(__name__)

DEFAULT_LEMMING_LOOKBACK_MINUTES = 240


def _weight(track: dict) -> float:
    try:
        return max(0.0, float(track.get("weight", DEFAULT_WEIGHT)))
    except (TypeError, ValueError):
        return 0.0


def _recency_key(last: Optional[datetime]) -> tuple:
    # (0, 0) for never played sorts before any real timestamp
    if last is None:
        return (0, 0.0)
    return (1, last.timestamp())


class CandidateSelector:

    def __init__(self, rng: random.Random = None,
                 lemming_lookback_minutes: int = DEFAULT_LEMMING_LOOKBACK_MINUTES):
        self.rng = rng or random.Random()
        self.lemming_lookback_minutes = lemming_lookback_minutes
        self._cursors = {}

    # ------------------------------------------------------------------
    # Playlist cursors
    # ------------------------------------------------------------------

    def cursor(self, slot_id: str) -> int:
        return self._cursors.get(slot_id, 0)

    def reset_cursor(self, slot_id: str = None) -> None:
        if slot_id is None:
            self._cursors.clear()
        else:
            self._cursors.pop(slot_id, None)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def select(self, slot: dict, eligible: List[dict], universe: List[dict],
               history: PlayHistory, now: datetime) -> Tuple[Optional[dict], SelectionMethod]:
        """Pick one track from eligible.

        universe is the slot's full target list in enumeration order (only
        playlist_order needs it).  Returns (track or None, method used); the
        method differs from the slot's when weighted/lemming fall back to
        uniform random.
        """
        method = slot["selection_method"]
        if not eligible:
            return None, method

        if method is SelectionMethod.WEIGHTED:
            return self._weighted(eligible, [_weight(t) for t in eligible], method)
        if method is SelectionMethod.PRIORITY:
            return self._priority(eligible, history), method
        if method is SelectionMethod.RANDOM:
            return self.rng.choice(eligible), method
        if method is SelectionMethod.LEAST_RECENTLY_PLAYED_SONG:
            return min(eligible, key=lambda t: _recency_key(history.last_played("track", t))), method
        if method is SelectionMethod.MOST_RECENTLY_PLAYED_SONG:
            return self._most_recent(eligible, history, "track"), method
        if method is SelectionMethod.LEAST_RECENTLY_PLAYED_ARTIST:
            return min(eligible, key=lambda t: _recency_key(history.last_played("artist", t))), method
        if method is SelectionMethod.MOST_RECENTLY_PLAYED_ARTIST:
            return self._most_recent(eligible, history, "artist"), method
        if method is SelectionMethod.LEMMING:
            return self._weighted(eligible, self._lemming_weights(eligible, history, now), method)
        if method is SelectionMethod.PLAYLIST_ORDER:
            return self._playlist_order(slot, eligible, universe), method
        raise ValueError(f"Unhandled selection method {method!r}")

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _weighted(self, eligible: List[dict], weights: List[float],
                  method: SelectionMethod) -> Tuple[dict, SelectionMethod]:
        if sum(weights) <= 0:
            logger.debug("[ROTATION] All candidate weights are zero; picking uniformly")
            return self.rng.choice(eligible), SelectionMethod.RANDOM
        return self.rng.choices(eligible, weights=weights, k=1)[0], method

    def _priority(self, eligible: List[dict], history: PlayHistory) -> dict:
        return min(
            eligible,
            key=lambda t: (-_weight(t), _recency_key(history.last_played("track", t))),
        )

    def _most_recent(self, eligible: List[dict], history: PlayHistory, kind: str) -> dict:
        # max() keeps the first of equal keys, so ties go to enumeration order
        return max(eligible, key=lambda t: _recency_key(history.last_played(kind, t)))

    def _lemming_weights(self, eligible: List[dict], history: PlayHistory,
                         now: datetime) -> List[float]:
        lookback = max(1, self.lemming_lookback_minutes)
        weights = []
        for t in eligible:
            last = history.last_played("track", t)
            if last is None:
                penalty = 0.0
            else:
                elapsed = max(0.0, minutes_between(last, now))
                penalty = 100.0 * max(0.0, 1.0 - elapsed / lookback)
            weights.append(max(1.0, 100.0 - penalty))
        return weights

    def _playlist_order(self, slot: dict, eligible: List[dict], universe: List[dict]) -> Optional[dict]:
        eligible_ids = {str(t["id"]) for t in eligible}

        # Request slots walk the request list from the front each time; it
        # shrinks as requests are served, so a persisted index would drift.
        if slot["kind"] is SlotKind.REQUEST:
            for t in universe:
                if str(t["id"]) in eligible_ids:
                    return t
            return None

        if not universe:
            return None
        start = self.cursor(slot["id"]) % len(universe)
        for offset in range(len(universe)):
            idx = (start + offset) % len(universe)
            if str(universe[idx]["id"]) in eligible_ids:
                self._cursors[slot["id"]] = idx + 1
                return universe[idx]
        return None
