"""
rotation/weights.py — Weight evolution and last-played bookkeeping.

Weights fall by on_play_reduce_weight_by each time a track is selected and
rise by on_request_increase_weight_by when a request for it is accepted,
always clamped to [0, 100].  Every read-modify-write of a single track runs
under its lock stripe so a play and a request landing together can't lose an
update.  Failed writes are logged and dropped: retrying could apply the
same delta twice.
"""

import logging
import threading
from typing import Optional

from rotation.errors import MetadataUnavailable
from rotation.models import DEFAULT_WEIGHT, clamp_weight, to_iso

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


class WeightAdjuster:

    def __init__(self, library, stripes: int = LOCK_STRIPES):
        self.library = library
        # Fixed pool; tracks hashing to the same stripe share a lock
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def lock_for(self, track_id) -> threading.Lock:
        return self._locks[hash(str(track_id)) % len(self._locks)]

    def on_played(self, track_id, reduce_by: float) -> Optional[float]:
        """Subtract reduce_by from the track's weight; returns the new weight."""
        return self._apply(track_id, -float(reduce_by or 0))

    def on_requested(self, track_id, increase_by: float) -> Optional[float]:
        """Add increase_by to the track's weight; returns the new weight."""
        return self._apply(track_id, float(increase_by or 0))

    def _apply(self, track_id, delta: float) -> Optional[float]:
        if delta == 0:
            return None
        with self.lock_for(track_id):
            try:
                track = self.library.get_track(track_id)
                if track is None:
                    logger.warning("[WEIGHTS] Track %s not found; weight unchanged", track_id)
                    return None
                old = float(track.get("weight", DEFAULT_WEIGHT))
                new = clamp_weight(old + delta)
                if new != old:
                    self.library.update_weight(track_id, new)
            except MetadataUnavailable as exc:
                logger.error("[WEIGHTS] Weight update for %s failed, not retried: %s", track_id, exc)
                return None
        logger.debug("[WEIGHTS] %s weight %.1f -> %.1f", track_id, old, new)
        return new

    def record_played(self, track_id, played_at) -> bool:
        """Write last_played_at through the store; returns False if the write failed."""
        with self.lock_for(track_id):
            try:
                self.library.update_last_played(track_id, played_at)
            except MetadataUnavailable as exc:
                logger.error(
                    "[WEIGHTS] last_played_at update for %s (%s) failed, not retried: %s",
                    track_id, to_iso(played_at), exc,
                )
                return False
        return True
