"""
Tests for rotation.engine.RotationEngine — selection, relaxation, slot
fallback, DJ modes, request slots, hour ticks and concurrent triggers.
"""
import logging
import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from rotation import errors
from rotation.audit import audit_plays
from rotation.engine import EngineState, RotationEngine
from rotation.errors import ConfigError, MetadataUnavailable
from rotation.models import DjMode, RequestStatus, SelectionMethod
from rotation.ports import InMemoryLibrary, PlayoutQueue, StaticConfigStore

# 2024-06-03 is a Monday
T0 = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)

NO_SEPARATION = {
    "no_same_track_minutes":  0,
    "no_same_album_minutes":  0,
    "no_same_artist_minutes": 0,
    "no_same_title_minutes":  0,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _track(id, artist=None, category="Current", weight=50.0, last_played=None):
    return {
        "id":             id,
        "title":          f"Song {id}",
        "artist":         artist or f"Artist {id}",
        "album":          f"Album {id}",
        "categories":     [category],
        "weight":         weight,
        "last_played_at": last_played,
    }


def _engine(tracks, clockwheel=None, policy=None, seed=1, library_cls=InMemoryLibrary, **kwargs):
    library = library_cls(tracks)
    queue   = PlayoutQueue()
    store   = StaticConfigStore(clockwheel, policy)
    engine  = RotationEngine(library, queue, store, rng=random.Random(seed), **kwargs)
    return engine, library, queue


def _at(minutes):
    return T0 + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Basic selection
# ---------------------------------------------------------------------------

def test_selection_enqueues_at_end_and_traces_states():
    engine, _, queue = _engine([_track("t1")])
    queue.enqueue("already-there")

    outcome = engine.on_queue_empty(T0)
    assert outcome.selected
    assert outcome.track_id == "t1"
    assert outcome.slot_id == "slot-1"
    assert outcome.method is SelectionMethod.WEIGHTED
    assert outcome.state == "selected"
    assert outcome.queue_index == 1
    assert queue.snapshot() == ["already-there", "t1"]
    assert engine.last_trace == [EngineState.SELECTING, EngineState.SELECTED]
    assert engine.state is EngineState.IDLE


def test_selection_writes_last_played_through_store():
    engine, library, _ = _engine([_track("t1")])
    engine.on_queue_empty(T0)
    track = library.get_track("t1")
    assert track["last_played_at"] == T0.isoformat()
    assert track["play_count"] == 1


def test_play_reduces_weight_by_configured_amount():
    engine, library, _ = _engine(
        [_track("t1", weight=50)],
        clockwheel={"on_play_reduce_weight_by": 5, "rules": NO_SEPARATION},
    )
    engine.on_queue_empty(T0)
    assert library.get_track("t1")["weight"] == 45
    for i in range(1, 15):
        engine.on_queue_empty(_at(i))
    assert library.get_track("t1")["weight"] == 0


def test_all_zero_weights_reports_random_method():
    engine, _, _ = _engine([_track("a", weight=0), _track("b", weight=0)])
    outcome = engine.on_queue_empty(T0)
    assert outcome.selected
    assert outcome.method is SelectionMethod.RANDOM


def test_seeded_runs_are_reproducible():
    tracks = [_track(f"t{i}", weight=10 * i) for i in range(1, 10)]

    def run():
        engine, _, _ = _engine(tracks, clockwheel={"rules": NO_SEPARATION}, seed=42)
        return [engine.on_queue_empty(_at(i)).track_id for i in range(10)]

    assert run() == run()


# ---------------------------------------------------------------------------
# Separation and relaxation
# ---------------------------------------------------------------------------

def _artist_x_engine(**slot):
    tracks = [
        _track("x1", artist="Artist X", category="X"),
        _track("x2", artist="Artist X", category="X"),
        _track("y1", artist="Artist Y", category="Y"),
    ]
    clockwheel = {
        "rules": {"no_same_artist_minutes": 8},
        "slots": [{"id": "x-only", "kind": "category", "target": "X", **slot}],
    }
    return _engine(tracks, clockwheel)


def test_same_artist_three_minutes_later_forces_relaxation():
    engine, _, _ = _artist_x_engine()
    first = engine.on_queue_empty(T0)
    assert first.selected and not first.relaxed

    second = engine.on_queue_empty(_at(3))
    assert second.selected
    assert second.relaxed
    assert "artist" in second.relaxed_rules
    assert "ghost_queue" not in second.relaxed_rules
    assert engine.last_trace == [EngineState.SELECTING, EngineState.RELAXING, EngineState.SELECTED]


def test_relaxed_rules_listed_in_check_order():
    engine, _, _ = _artist_x_engine()
    engine.on_queue_empty(T0)
    outcome = engine.on_queue_empty(_at(3))
    # x1/x2 block on artist; whichever aired first also blocks on track/album/title
    assert outcome.relaxed_rules[0] == "track"


def test_slot_without_enforcement_never_relaxes():
    engine, _, _ = _artist_x_engine(enforce_rules=False)
    engine.on_queue_empty(T0)
    outcome = engine.on_queue_empty(_at(3))
    assert outcome.selected
    assert not outcome.relaxed
    assert EngineState.RELAXING not in engine.last_trace


def test_separation_honours_plays_recorded_in_library():
    engine, _, _ = _engine(
        [_track("t1", last_played=_at(-5).isoformat()), _track("t2")],
        clockwheel={"rules": {"no_same_artist_minutes": 0}},
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.track_id == "t2"
    assert not outcome.relaxed


def test_ghost_queue_relaxed_before_separation():
    engine, _, _ = _engine(
        [_track("only")],
        clockwheel={"rules": {**NO_SEPARATION, "use_ghost_queue": True, "keep_songs_in_queue": 1}},
    )
    engine.on_queue_empty(T0)
    outcome = engine.on_queue_empty(_at(60))
    assert outcome.selected
    assert outcome.relaxed_rules == ["ghost_queue"]


def test_ghost_queue_then_separation_both_reported():
    engine, _, _ = _engine(
        [_track("only")],
        clockwheel={"rules": {"use_ghost_queue": True, "keep_songs_in_queue": 1}},
    )
    engine.on_queue_empty(T0)
    outcome = engine.on_queue_empty(_at(1))
    assert outcome.relaxed_rules[0] == "ghost_queue"
    assert "track" in outcome.relaxed_rules
    assert engine.last_trace.count(EngineState.RELAXING) == 1


def test_ghost_queue_alternates_two_tracks():
    engine, _, queue = _engine(
        [_track("a"), _track("b")],
        clockwheel={"rules": {**NO_SEPARATION, "use_ghost_queue": True, "keep_songs_in_queue": 1}},
    )
    for i in range(6):
        assert not engine.on_queue_empty(_at(i)).relaxed
    picks = queue.snapshot()
    assert all(picks[i] != picks[i + 1] for i in range(len(picks) - 1))


def test_verbose_logging_reports_exclusions(caplog):
    engine, _, _ = _engine(
        [_track("a"), _track("b")],
        clockwheel={"verbose_logging": True},
    )
    engine.on_queue_empty(T0)
    with caplog.at_level(logging.INFO, logger="rotation.engine"):
        engine.on_queue_empty(_at(1))
    assert "Excluded" in caplog.text


def test_play_log_audits_clean():
    tracks = [_track(f"t{i}") for i in range(12)]
    engine, _, _ = _engine(tracks)
    for i in range(10):
        engine.on_queue_empty(_at(4 * i))
    report = audit_plays(list(engine.plays), engine.config_store.load_clockwheel_config()["rules"])
    assert report["valid"] is True
    assert report["stats"]["total_plays"] == 10


# ---------------------------------------------------------------------------
# Exhaustion and slot fallback
# ---------------------------------------------------------------------------

def test_empty_slot_is_exhausted():
    engine, _, queue = _engine(
        [_track("t1")],
        clockwheel={"slots": [{"id": "nothing", "kind": "category", "target": "Polka"}]},
    )
    outcome = engine.on_queue_empty(T0)
    assert not outcome.selected
    assert outcome.reason == errors.NO_ELIGIBLE_TRACK
    assert outcome.state == "exhausted"
    assert engine.state is EngineState.IDLE
    assert queue.snapshot() == []


def test_exhausted_slot_falls_through_to_next_active_slot():
    engine, _, _ = _engine(
        [_track("r1", category="Rock")],
        clockwheel={"slots": [
            {"id": "polka", "kind": "category", "target": "Polka"},
            {"id": "rock",  "kind": "category", "target": "Rock"},
        ]},
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.slot_id == "rock"
    assert outcome.track_id == "r1"
    assert engine.scheduler.last_slot_id == "rock"


def test_slots_rotate_in_order():
    engine, _, _ = _engine(
        [_track("a1", category="A"), _track("b1", category="B")],
        clockwheel={
            "rules": NO_SEPARATION,
            "slots": [
                {"id": "a", "kind": "category", "target": "A"},
                {"id": "b", "kind": "category", "target": "B"},
            ],
        },
    )
    assert [engine.on_queue_empty(_at(i)).slot_id for i in range(4)] == ["a", "b", "a", "b"]


def test_directory_slot():
    tracks = [
        {**_track("d1"), "directory": "/music/80s/synth"},
        {**_track("d2"), "directory": "/music/90s"},
    ]
    engine, _, _ = _engine(
        tracks,
        clockwheel={"slots": [{"id": "eighties", "kind": "directory", "target": "/music/80s"}]},
    )
    assert engine.on_queue_empty(T0).track_id == "d1"


def test_no_active_slot_without_default():
    engine, _, _ = _engine(
        [_track("t1")],
        clockwheel={"slots": [{"id": "weekend", "active_days": [5, 6]}]},
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.reason == errors.NO_SLOT_AVAILABLE
    assert outcome.state == "exhausted"


def test_no_active_slot_uses_default_slot():
    engine, _, _ = _engine(
        [_track("t1")],
        clockwheel={
            "slots": [{"id": "weekend", "active_days": [5, 6]}],
            "default_slot_id": "weekend",
        },
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.selected
    assert outcome.slot_id == "weekend"


# ---------------------------------------------------------------------------
# Manual enqueue and DJ modes
# ---------------------------------------------------------------------------

def test_manual_enqueue_from_named_slot_ignores_window_and_cursor():
    engine, _, _ = _engine(
        [_track("t1")],
        clockwheel={"slots": [{"id": "weekend", "active_days": [5, 6]}, {"id": "any"}]},
    )
    outcome = engine.on_manual_enqueue("weekend", T0)
    assert outcome.slot_id == "weekend"
    assert outcome.selected
    assert engine.scheduler.last_slot_id is None


def test_manual_enqueue_unknown_slot():
    engine, _, _ = _engine([_track("t1")])
    outcome = engine.on_manual_enqueue("nope", T0)
    assert outcome.reason == errors.NO_SLOT_AVAILABLE
    assert outcome.slot_id == "nope"


def test_manual_mode_does_not_fill_empty_queue():
    engine, _, queue = _engine([_track("t1")], mode="manual")
    outcome = engine.on_queue_empty(T0)
    assert outcome.reason == errors.MANUAL_MODE
    assert outcome.state == "idle"
    assert queue.snapshot() == []

    assert engine.on_manual_enqueue(now=T0).selected


def test_set_mode():
    engine, _, _ = _engine([_track("t1")])
    assert engine.set_mode("assisted") is DjMode.ASSISTED
    assert engine.on_queue_empty(T0).selected
    with pytest.raises(ConfigError):
        engine.set_mode("robot")


# ---------------------------------------------------------------------------
# Request slots
# ---------------------------------------------------------------------------

def _request_engine():
    return _engine(
        [_track("t1"), _track("t2"), _track("t3")],
        clockwheel={
            "rules": NO_SEPARATION,
            "slots": [
                {"id": "req",   "kind": "request", "selection_method": "playlist_order"},
                {"id": "music", "kind": "category", "target": ""},
            ],
        },
        policy={"auto_accept": False},
    )


def test_request_slot_serves_pending_request():
    engine, _, queue = _request_engine()
    admitted = engine.on_request_received({"track_id": "t3", "requester_name": "Sam"}, now=T0)
    assert admitted.status is RequestStatus.PENDING

    outcome = engine.on_queue_empty(T0)
    assert outcome.slot_id == "req"
    assert outcome.track_id == "t3"
    assert outcome.request_id == admitted.request["id"]
    assert queue.snapshot() == ["t3"]
    assert engine.requests.log.get(outcome.request_id)["status"] is RequestStatus.ACCEPTED

    played = engine.mark_played("t3", _at(4))
    assert played["status"] is RequestStatus.PLAYED


def test_request_slot_serves_oldest_first():
    engine, _, _ = _request_engine()
    engine.on_request_received({"track_id": "t2"}, now=T0)
    engine.on_request_received({"track_id": "t1"}, now=_at(1))
    assert engine.on_manual_enqueue("req", _at(2)).track_id == "t2"
    assert engine.on_manual_enqueue("req", _at(3)).track_id == "t1"


def test_empty_request_slot_falls_through():
    engine, _, _ = _request_engine()
    outcome = engine.on_queue_empty(T0)
    assert outcome.slot_id == "music"
    assert outcome.request_id is None


def test_operator_accept_through_engine():
    engine, _, queue = _request_engine()
    result = engine.on_request_received({"track_id": "t1"}, now=T0)
    engine.accept_request(result.request["id"])
    assert queue.snapshot() == ["t1"]


def _requested_engine(**policy):
    return _engine(
        [
            _track("a",  artist="X", weight=90),
            _track("a2", artist="X", weight=80),
            _track("b",  artist="Y", weight=10),
        ],
        clockwheel={
            "rules": {"use_ghost_queue": True, "keep_songs_in_queue": 1},
            "slots": [{"id": "hits", "target": "", "selection_method": "priority"}],
        },
        policy={"auto_accept": True, **policy},
    )


def test_auto_accepted_request_counts_as_a_play():
    engine, library, queue = _requested_engine()
    assert engine.on_request_received({"track_id": "a"}, now=T0).accepted

    assert library.get_track("a")["last_played_at"] == T0.isoformat()
    assert engine.ghost_queue.snapshot() == ["a"]
    assert engine.history.last_played("artist", {"artist": "X"}) == T0

    outcome = engine.on_queue_empty(_at(1))
    assert outcome.track_id == "b"
    assert not outcome.relaxed
    assert queue.snapshot() == ["a", "b"]


def test_operator_accepted_request_counts_as_a_play():
    engine, library, queue = _requested_engine(auto_accept=False)
    pending = engine.on_request_received({"track_id": "a"}, now=T0)
    assert library.get_track("a")["last_played_at"] is None

    engine.accept_request(pending.request["id"], now=_at(1))
    assert library.get_track("a")["last_played_at"] == _at(1).isoformat()
    assert engine.on_queue_empty(_at(2)).track_id == "b"
    assert queue.snapshot() == ["a", "b"]


def test_rejected_request_is_not_recorded():
    engine, library, _ = _requested_engine(blacklisted_song_ids=["a"])
    assert engine.on_request_received({"track_id": "a"}, now=T0).rejected
    assert library.get_track("a")["last_played_at"] is None
    assert engine.ghost_queue.snapshot() == []


# ---------------------------------------------------------------------------
# Hour tick
# ---------------------------------------------------------------------------

def test_hour_tick_restarts_rotation_when_windows_change():
    engine, _, _ = _engine(
        [_track("t1"), _track("t2")],
        clockwheel={
            "rules": NO_SEPARATION,
            "slots": [
                {"id": "morning", "start_hour": 6,  "end_hour": 12},
                {"id": "any"},
                {"id": "evening", "start_hour": 18, "end_hour": 23},
            ],
        },
    )
    assert engine.on_hour_tick(T0) is False
    assert engine.on_queue_empty(T0).slot_id == "morning"
    assert engine.on_hour_tick(T0.replace(hour=18)) is True
    assert engine.scheduler.last_slot_id is None
    assert engine.on_queue_empty(T0.replace(hour=18)).slot_id == "any"


def test_hour_tick_prunes_old_history():
    engine, _, _ = _engine([_track("t1")])
    engine.on_queue_empty(T0)
    assert len(engine.history) == 1
    engine.on_hour_tick(_at(5 * 60))
    assert len(engine.history) == 0


def test_pruned_history_is_refilled_from_library():
    engine, _, _ = _engine(
        [_track("t1", category="A"), _track("t2", category="B")],
        clockwheel={"slots": [
            {"id": "a", "kind": "category", "target": "A"},
            {"id": "b", "kind": "category", "target": "B"},
        ]},
    )
    assert engine.on_manual_enqueue("a", T0).track_id == "t1"
    engine.on_hour_tick(_at(5 * 60))
    assert engine.history.last_played("track", {"id": "t1"}) is None

    engine.on_manual_enqueue("b", _at(5 * 60 + 1))
    assert engine.history.last_played("track", {"id": "t1"}) == T0


def test_play_cap_relaxed_like_other_rules():
    engine, _, _ = _engine(
        [_track("only")],
        clockwheel={"rules": {**NO_SEPARATION, "max_plays_per_song": 1, "max_plays_window_hours": 1}},
    )
    assert not engine.on_queue_empty(T0).relaxed
    outcome = engine.on_queue_empty(_at(30))
    assert outcome.relaxed_rules == ["max_plays"]
    assert not engine.on_queue_empty(_at(95)).relaxed


# ---------------------------------------------------------------------------
# Faults
# ---------------------------------------------------------------------------

class _DownLibrary(InMemoryLibrary):
    def get_tracks_in_category(self, category):
        raise MetadataUnavailable("db offline")


class _BrokenConfig(StaticConfigStore):
    def load_clockwheel_config(self):
        raise ConfigError("slot list corrupt")


def test_store_failure_reported_as_outcome():
    engine, _, queue = _engine([_track("t1")], library_cls=_DownLibrary)
    outcome = engine.on_queue_empty(T0)
    assert outcome.reason == errors.METADATA_UNAVAILABLE
    assert outcome.state == "exhausted"
    assert queue.snapshot() == []


def test_invalid_config_reported_as_outcome():
    engine = RotationEngine(InMemoryLibrary([_track("t1")]), PlayoutQueue(), _BrokenConfig())
    outcome = engine.on_queue_empty(T0)
    assert outcome.reason == errors.CONFIG_INVALID
    assert engine.on_hour_tick(T0) is False


# ---------------------------------------------------------------------------
# Library-wide artist history
# ---------------------------------------------------------------------------

def test_artist_recency_sees_plays_outside_the_slot():
    tracks = [
        _track("a1", artist="A", category="Slot"),
        _track("b1", artist="B", category="Slot"),
        _track("a-other", artist="A", category="Other", last_played=_at(-10).isoformat()),
    ]
    engine, _, _ = _engine(
        tracks,
        clockwheel={
            "rules": NO_SEPARATION,
            "slots": [{"id": "s", "target": "Slot", "selection_method": "least_recently_played_artist"}],
        },
    )
    assert engine.on_queue_empty(T0).track_id == "b1"


def test_artist_gap_sees_plays_outside_the_slot():
    tracks = [
        _track("g1", artist="X", category="Gold", last_played=_at(-3).isoformat()),
        _track("c1", artist="X", category="Current"),
        _track("c2", artist="Y", category="Current"),
    ]
    engine, _, _ = _engine(
        tracks,
        clockwheel={"slots": [{"id": "current", "target": "Current", "selection_method": "priority"}]},
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.track_id == "c2"
    assert not outcome.relaxed


def test_artist_gap_outside_the_slot_forces_relaxation():
    tracks = [
        _track("g1", artist="X", category="Gold", last_played=_at(-3).isoformat()),
        _track("c1", artist="X", category="Current"),
    ]
    engine, _, _ = _engine(
        tracks,
        clockwheel={"slots": [{"id": "current", "target": "Current"}]},
    )
    outcome = engine.on_queue_empty(T0)
    assert outcome.track_id == "c1"
    assert outcome.relaxed_rules == ["artist"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_concurrent_triggers_never_double_select():
    tracks = [_track(f"t{i}") for i in range(30)]
    engine, _, queue = _engine(tracks)
    start = threading.Barrier(20)
    outcomes = []

    def trigger():
        start.wait()
        outcomes.append(engine.on_queue_empty(T0))

    threads = [threading.Thread(target=trigger) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(o.selected and not o.relaxed for o in outcomes)
    assert len(queue) == 20
    assert len(set(queue.snapshot())) == 20
