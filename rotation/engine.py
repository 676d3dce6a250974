"""
rotation/engine.py — The AutoDJ orchestrator.

One RotationEngine feeds one output queue.  Every trigger that selects a
track runs under the engine's lock, so concurrent queue-empty events,
manual enqueues and hour ticks line up behind the selection in flight
instead of racing on the ghost queue, the history and the weights.
Request admission runs under the admission controller's own lock and does
not wait for a selection to finish; an accepted request is then recorded
(ghost queue, history, last played) under the engine's lock.

Selection walks:  idle → selecting → selected
                                   ↘ relaxing → selected | exhausted

Relaxation is fixed: first the ghost queue is dropped, then the separation
rules.  Whatever was dropped is reported on the outcome.
"""

import logging
import threading
from collections import deque
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from rotation import errors
from rotation.admission import RequestAdmissionController, RequestLog
from rotation.errors import ConfigError, MetadataUnavailable
from rotation.ghost_queue import GhostQueue
from rotation.history import PlayHistory
from rotation.models import (
    MAX_WEIGHT,
    MIN_WEIGHT,
    DjMode,
    QueuePosition,
    SelectionOutcome,
    SlotKind,
    now_local,
    parse_dj_mode,
    parse_ts,
    to_iso,
)
from rotation.rules import find_slot
from rotation.scheduler import SlotScheduler
from rotation.selector import CandidateSelector
from rotation.separation import RULE_NAMES, SeparationRuleEngine, enforcement_active, longest_window_minutes
from rotation.weights import WeightAdjuster

logger = logging.getLogger(__name__)

PLAY_LOG_SIZE = 500


class EngineState(str, Enum):
    IDLE      = "idle"
    SELECTING = "selecting"
    SELECTED  = "selected"
    RELAXING  = "relaxing"
    EXHAUSTED = "exhausted"


class RotationEngine:
    """
    Selects the next track for one output queue and admits listener requests
    into it.

    Args:
        library:      MetadataPort (track store)
        queue:        QueueSink the chosen tracks are placed on
        config_store: ConfigStore; configs are re-read on every call so live
                      edits take effect on the next selection
        request_log:  RequestLog to share with the host (a fresh one if None)
        rng:          random.Random for reproducible runs
        clock:        callable returning "now" (aware datetime)
        mode:         initial DjMode
    """

    def __init__(self, library, queue, config_store, request_log: RequestLog = None,
                 rng=None, clock=None, mode=DjMode.AUTODJ):
        self.library      = library
        self.queue        = queue
        self.config_store = config_store

        self.history     = PlayHistory()
        self.separation  = SeparationRuleEngine(self.history)
        self.ghost_queue = GhostQueue()
        self.scheduler   = SlotScheduler()
        self.selector    = CandidateSelector(rng)
        self.weights     = WeightAdjuster(library)
        self.requests    = RequestAdmissionController(
            library, queue, config_store, self.weights, request_log
        )

        self.mode  = parse_dj_mode(mode)
        self.state = EngineState.IDLE
        # States visited by the most recent selection, for operators and tests
        self.last_trace: List[EngineState] = []
        self.plays = deque(maxlen=PLAY_LOG_SIZE)

        self._clock = clock or now_local
        self._lock  = threading.Lock()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_queue_empty(self, now=None) -> SelectionOutcome:
        if self.mode is DjMode.MANUAL:
            logger.debug("[ROTATION] Queue empty in manual mode; nothing selected")
            return SelectionOutcome(reason=errors.MANUAL_MODE, state=EngineState.IDLE.value)
        return self.select_next(now=now)

    def on_manual_enqueue(self, slot_id: str = None, now=None) -> SelectionOutcome:
        return self.select_next(now=now, slot_id=slot_id)

    def on_request_received(self, submission: dict, now=None):
        now = self._now(now)
        result = self.requests.admit(submission, now=now)
        if result.accepted:
            self._record_request(result, now)
        return result

    def on_hour_tick(self, now=None) -> bool:
        """Re-evaluate slot windows and prune history; True if the rotation restarted.

        Pruning only bounds memory.  Each selection folds every library
        track's last_played_at back in, so separation never depends on it.
        """
        now = self._now(now)
        with self._lock:
            try:
                config = self.config_store.load_clockwheel_config()
            except ConfigError as exc:
                logger.error("[ROTATION] Hour tick skipped, clockwheel config invalid: %s", exc)
                return False
            reset = self.scheduler.on_hour_tick(config["slots"], now)
            horizon = max(longest_window_minutes(config["rules"]), config["lemming_lookback_minutes"])
            pruned = self.history.prune(now - timedelta(minutes=horizon))
            if pruned:
                logger.debug("[ROTATION] Pruned %d history entries older than %d min", pruned, horizon)
            return reset

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def set_mode(self, mode) -> DjMode:
        self.mode = parse_dj_mode(mode)
        logger.info("[ROTATION] DJ mode set to %s", self.mode.value)
        return self.mode

    def accept_request(self, request_id, now=None):
        result = self.requests.accept(request_id)
        self._record_request(result, self._now(now))
        return result

    def reject_request(self, request_id, reason: str = None):
        return self.requests.reject(request_id, reason)

    def mark_played(self, track_id, played_at=None):
        return self.requests.log.mark_played(track_id, self._now(played_at))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _now(self, now):
        return parse_ts(now) or parse_ts(self._clock())

    def _enter(self, state: EngineState) -> None:
        self.state = state
        self.last_trace.append(state)

    def select_next(self, now=None, slot_id: str = None) -> SelectionOutcome:
        """Select one track and place it at the end of the queue.

        With slot_id, only that slot is tried (its day/hour window is
        ignored and the rotation cursor is left alone).  Otherwise the due
        slot is tried first, then every other active slot in rotation order.
        """
        now = self._now(now)
        with self._lock:
            self.last_trace = []
            self._enter(EngineState.SELECTING)
            try:
                outcome = self._select(now, slot_id)
            finally:
                final = self.state
                self.state = EngineState.IDLE
            if outcome.state is None:
                outcome.state = final.value
            return outcome

    def _select(self, now, slot_id: Optional[str]) -> SelectionOutcome:
        try:
            config = self.config_store.load_clockwheel_config()
        except ConfigError as exc:
            logger.error("[ROTATION] Clockwheel config invalid: %s", exc)
            self._enter(EngineState.EXHAUSTED)
            return SelectionOutcome(reason=errors.CONFIG_INVALID)

        rules = config["rules"]
        self.ghost_queue.configure(rules["keep_songs_in_queue"], rules["use_ghost_queue"])
        self.selector.lemming_lookback_minutes = config["lemming_lookback_minutes"]

        if slot_id is not None:
            slot = find_slot(config, slot_id)
            if slot is None:
                logger.warning("[SCHEDULER] Manual enqueue for unknown slot %s", slot_id)
                self._enter(EngineState.EXHAUSTED)
                return SelectionOutcome(slot_id=slot_id, reason=errors.NO_SLOT_AVAILABLE)
            candidates = [slot]
        else:
            candidates = self.scheduler.due_slots(config["slots"], now)
            if not candidates:
                default = find_slot(config, config["default_slot_id"]) if config.get("default_slot_id") else None
                if default is None:
                    logger.warning("[SCHEDULER] No slot active on weekday %d at %02d:00", now.weekday(), now.hour)
                    self._enter(EngineState.EXHAUSTED)
                    return SelectionOutcome(reason=errors.NO_SLOT_AVAILABLE)
                logger.info("[SCHEDULER] No slot active; using default slot %s", default["id"])
                candidates = [default]

        for slot in candidates:
            try:
                outcome, chosen, request_id = self._select_from_slot(slot, config, now)
            except MetadataUnavailable as exc:
                logger.error("[ROTATION] Track store unavailable while filling slot %s: %s", slot["id"], exc)
                self._enter(EngineState.EXHAUSTED)
                return SelectionOutcome(
                    slot_id=slot["id"], method=slot["selection_method"],
                    reason=errors.METADATA_UNAVAILABLE,
                )
            if chosen is not None:
                if slot_id is None:
                    self.scheduler.mark_used(slot["id"])
                self._commit(slot, chosen, outcome, config, now, request_id)
                return outcome
            logger.warning("[ROTATION] Slot %s exhausted", slot["id"])

        if slot_id is None:
            # Move on so the next trigger starts from the following slot
            self.scheduler.mark_used(candidates[0]["id"])
        self._enter(EngineState.EXHAUSTED)
        return SelectionOutcome(
            slot_id=candidates[0]["id"],
            method=candidates[0]["selection_method"],
            reason=errors.NO_ELIGIBLE_TRACK,
        )

    def _universe(self, slot: dict):
        """The slot's target tracks in enumeration order, plus request ids by track id."""
        kind = slot["kind"]
        if kind is SlotKind.CATEGORY:
            return self.library.get_tracks_in_category(slot["target"]), {}
        if kind is SlotKind.DIRECTORY:
            return self.library.get_tracks_in_directory(slot["target"]), {}
        if kind is SlotKind.REQUEST:
            tracks, request_ids = [], {}
            for entry in self.requests.log.pending():
                track_id = entry["track_id"]
                if track_id in request_ids:
                    continue
                track = self.library.get_track(track_id)
                if track is None:
                    logger.warning("[ROTATION] Pending request #%s names missing track %s", entry["id"], track_id)
                    continue
                tracks.append(track)
                request_ids[track_id] = entry["id"]
            return tracks, request_ids
        raise ValueError(f"Unhandled slot kind {kind!r}")

    def _select_from_slot(self, slot: dict, config: dict, now):
        """Filter and pick from one slot.  Returns (outcome, chosen track or None, request id)."""
        rules   = config["rules"]
        verbose = config["verbose_logging"]
        method  = slot["selection_method"]

        universe, request_ids = self._universe(slot)
        # Artist, album and title gaps span the whole library, not just this slot
        for t in self.library.get_tracks_by_weight_range(MIN_WEIGHT, MAX_WEIGHT):
            self.history.observe(t)
        for t in universe:
            self.history.observe(t)

        outcome = SelectionOutcome(slot_id=slot["id"], method=method)
        if not universe:
            logger.info("[ROTATION] Slot %s (%s '%s') has no tracks",
                        slot["id"], slot["kind"].value, slot["target"])
            return outcome, None, None

        enforce = enforcement_active(rules, slot)
        blocked = {
            t["id"]: (self.separation.failed_rules(t, rules, now) if enforce else [])
            for t in universe
        }
        ghosted = {t["id"] for t in universe if self.ghost_queue.contains(t["id"])}

        log = logger.info if verbose else logger.debug
        for t in universe:
            if blocked[t["id"]] or t["id"] in ghosted:
                reasons = blocked[t["id"]] + (["ghost_queue"] if t["id"] in ghosted else [])
                log("[ROTATION] Excluded %s - %s: %s", t.get("artist"), t.get("title"), ", ".join(reasons))

        eligible = [t for t in universe if not blocked[t["id"]] and t["id"] not in ghosted]

        if not eligible and ghosted:
            self._enter(EngineState.RELAXING)
            outcome.relaxed_rules.append("ghost_queue")
            logger.warning("[ROTATION] Slot %s: nothing eligible, dropping ghost queue", slot["id"])
            eligible = [t for t in universe if not blocked[t["id"]]]

        if not eligible and enforce:
            if self.state is not EngineState.RELAXING:
                self._enter(EngineState.RELAXING)
            dropped = [k for k in RULE_NAMES if any(k in b for b in blocked.values())]
            outcome.relaxed_rules.extend(dropped)
            logger.warning("[ROTATION] Slot %s: nothing eligible, dropping separation rules (%s)",
                           slot["id"], ", ".join(dropped))
            eligible = list(universe)

        outcome.relaxed = bool(outcome.relaxed_rules)
        chosen, used = self.selector.select(slot, eligible, universe, self.history, now)
        outcome.method = used
        if chosen is None:
            return outcome, None, None
        outcome.track_id = chosen["id"]
        return outcome, chosen, request_ids.get(chosen["id"])

    def _record_request(self, result, now) -> None:
        """An accepted request airs like a selection: ghost queue, history, last played."""
        track_id = result.request["track_id"]
        with self._lock:
            try:
                track = self.library.get_track(track_id)
            except MetadataUnavailable as exc:
                logger.error("[ROTATION] Could not record accepted request for %s: %s", track_id, exc)
                return
            if track is None:
                logger.warning("[ROTATION] Accepted request names missing track %s", track_id)
                return
            try:
                rules = self.config_store.load_clockwheel_config()["rules"]
                self.ghost_queue.configure(rules["keep_songs_in_queue"], rules["use_ghost_queue"])
            except ConfigError as exc:
                logger.error("[ROTATION] Clockwheel config invalid, ghost queue left as is: %s", exc)
            self.ghost_queue.push(track_id)
            self.history.record_play(track, now)
            self.weights.record_played(track_id, now)
        logger.debug("[ROTATION] Recorded accepted request %s - %s", track.get("artist"), track.get("title"))

    def _commit(self, slot: dict, chosen: dict, outcome: SelectionOutcome,
                config: dict, now, request_id) -> None:
        track_id = chosen["id"]
        outcome.queue_index = self.queue.enqueue(track_id, QueuePosition.end())
        self.ghost_queue.push(track_id)
        self.history.record_play(chosen, now)

        if request_id is not None:
            self.requests.fulfil(request_id)
            outcome.request_id = request_id

        self.weights.on_played(track_id, config["on_play_reduce_weight_by"])
        self.weights.record_played(track_id, now)

        self.plays.append({
            "track_id":  track_id,
            "artist":    chosen.get("artist"),
            "album":     chosen.get("album"),
            "title":     chosen.get("title"),
            "slot_id":   slot["id"],
            "method":    outcome.method.value,
            "relaxed":   outcome.relaxed,
            "played_at": to_iso(now),
        })
        self._enter(EngineState.SELECTED)
        logger.debug(
            "[ROTATION] Selected %s - %s (slot %s, %s%s)",
            chosen.get("artist"), chosen.get("title"), slot["id"], outcome.method.value,
            ", relaxed: " + ", ".join(outcome.relaxed_rules) if outcome.relaxed else "",
        )
