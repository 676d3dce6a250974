import logging
import os
import threading

from flask import Flask, jsonify, request

from rotation.admission import RequestLog
from rotation.audit import audit_plays
from rotation.engine import RotationEngine
from rotation.errors import (
    ConfigError,
    DuplicateTrack,
    InvalidRequestState,
    InvalidTrackId,
    MetadataUnavailable,
    RequestNotFound,
)
from rotation.models import (
    ROTATION_BANDS,
    band_by_label,
    band_for_weight,
)
from rotation.ports import PlayoutQueue, in_category, in_directory
from rotation.rules import clockwheel_to_dict, policy_to_dict
from rotation.store import JsonConfigStore, JsonLibrary

logging.basicConfig(
    level=os.environ.get("ROTATION_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

DATA_DIR            = os.environ.get("ROTATION_DATA_DIR") or os.path.join(os.path.dirname(__file__), "data")
TRACKS_DIR          = os.path.join(DATA_DIR, "tracks")
CLOCKWHEEL_FILE     = os.path.join(DATA_DIR, "clockwheel.json")
REQUEST_POLICY_FILE = os.path.join(DATA_DIR, "request_policy.json")
REQUESTS_FILE       = os.path.join(DATA_DIR, "requests.json")

# Built on first use so tests can point the paths elsewhere first
_engine = None
_engine_lock = threading.Lock()


def _get_engine() -> RotationEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = RotationEngine(
                JsonLibrary(TRACKS_DIR),
                PlayoutQueue(),
                JsonConfigStore(CLOCKWHEEL_FILE, REQUEST_POLICY_FILE),
                request_log=RequestLog(REQUESTS_FILE),
            )
        return _engine


@app.errorhandler(ConfigError)
def _config_error(exc):
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(RequestNotFound)
def _request_not_found(exc):
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(InvalidRequestState)
def _invalid_request_state(exc):
    return jsonify({"error": str(exc)}), 409


@app.errorhandler(InvalidTrackId)
def _invalid_track_id(exc):
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(DuplicateTrack)
def _duplicate_track(exc):
    return jsonify({"error": str(exc)}), 409


@app.errorhandler(MetadataUnavailable)
def _metadata_unavailable(exc):
    logger.error("Track store unavailable: %s", exc)
    return jsonify({"error": str(exc)}), 503


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.route("/api/status")
def status():
    engine = _get_engine()
    return jsonify({
        "service":          "clockwheel-rotation",
        "status":           "ok",
        "mode":             engine.mode.value,
        "state":            engine.state.value,
        "queue_length":     len(engine.queue),
        "pending_requests": len(engine.requests.log.pending()),
    })


# ---------------------------------------------------------------------------
# Clockwheel config and request policy
# ---------------------------------------------------------------------------

@app.route("/api/clockwheel", methods=["GET"])
def get_clockwheel():
    config = _get_engine().config_store.load_clockwheel_config()
    return jsonify(clockwheel_to_dict(config))


@app.route("/api/clockwheel", methods=["PUT"])
def update_clockwheel():
    data   = request.get_json(silent=True) or {}
    config = _get_engine().config_store.save_clockwheel_config(data)
    return jsonify(clockwheel_to_dict(config))


@app.route("/api/request-policy", methods=["GET"])
def get_request_policy():
    policy = _get_engine().config_store.load_request_policy()
    return jsonify(policy_to_dict(policy))


@app.route("/api/request-policy", methods=["PUT"])
def update_request_policy():
    data   = request.get_json(silent=True) or {}
    policy = _get_engine().config_store.save_request_policy(data)
    return jsonify(policy_to_dict(policy))


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------

_TRACK_REQUIRED = {"title", "artist"}


def _with_band(track: dict) -> dict:
    band = band_for_weight(track.get("weight", 0))
    return {**track, "rotation_band": band["label"] if band else None}


@app.route("/api/tracks", methods=["GET"])
def list_tracks():
    tracks = _get_engine().library.all_tracks()

    # --- Filter ---
    category = request.args.get("category")
    if category:
        tracks = [t for t in tracks if in_category(t, category)]

    directory = request.args.get("directory")
    if directory:
        tracks = [t for t in tracks if in_directory(t, directory)]

    band_label = request.args.get("band")
    if band_label:
        band = band_by_label(band_label)
        if band is None:
            labels = ", ".join(b["label"] for b in ROTATION_BANDS)
            return jsonify({"error": f"Unknown rotation band '{band_label}' (expected one of: {labels})"}), 400
        tracks = [t for t in tracks if band["min"] <= float(t.get("weight", 0)) < band["max"]]

    search = (request.args.get("search") or "").strip().lower()
    if search:
        tracks = [
            t for t in tracks
            if search in (t.get("title")  or "").lower()
            or search in (t.get("artist") or "").lower()
        ]

    total = len(tracks)

    # --- Paginate ---
    try:
        offset = max(0, int(request.args.get("offset", 0)))
        limit  = max(0, int(request.args.get("limit",  0)))
    except (ValueError, TypeError):
        offset, limit = 0, 0

    if offset:
        tracks = tracks[offset:]
    if limit:
        tracks = tracks[:limit]

    return jsonify({
        "total":  total,
        "offset": offset,
        "limit":  limit,
        "tracks": [_with_band(t) for t in tracks],
    })


@app.route("/api/tracks", methods=["POST"])
def create_track():
    data    = request.get_json(silent=True) or {}
    missing = _TRACK_REQUIRED - data.keys()
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(sorted(missing))}"}), 400
    track = _get_engine().library.add(data)
    return jsonify(_with_band(track)), 201


@app.route("/api/tracks/import", methods=["POST"])
def import_tracks():
    """Bulk-import tracks from a JSON array or {\"tracks\": [...]} body."""
    body = request.get_json(silent=True) or {}
    raw  = body if isinstance(body, list) else body.get("tracks", [])

    library = _get_engine().library
    created, errors = [], []
    for i, item in enumerate(raw):
        missing = _TRACK_REQUIRED - item.keys()
        if missing:
            errors.append({
                "index": i,
                "error": f"Missing required fields: {', '.join(sorted(missing))}",
                "data":  item,
            })
            continue
        try:
            created.append(library.add(item))
        except (InvalidTrackId, DuplicateTrack) as exc:
            errors.append({"index": i, "error": str(exc), "data": item})

    status_code = 201 if created else 400
    return jsonify({
        "imported":      len(created),
        "errors":        len(errors),
        "tracks":        created,
        "error_details": errors,
    }), status_code


@app.route("/api/tracks/<track_id>", methods=["GET"])
def get_track(track_id):
    track = _get_engine().library.get_track(track_id)
    if track is None:
        return jsonify({"error": "Track not found"}), 404
    return jsonify(_with_band(track))


# ---------------------------------------------------------------------------
# AutoDJ
# ---------------------------------------------------------------------------

def _outcome_response(outcome):
    body = outcome.to_dict()
    body["queue"] = _get_engine().queue.snapshot()
    return jsonify(body)


@app.route("/api/autodj/next", methods=["POST"])
def autodj_next():
    """Queue ran dry: select the next track (no-op in manual mode)."""
    data = request.get_json(silent=True) or {}
    return _outcome_response(_get_engine().on_queue_empty(now=data.get("now")))


@app.route("/api/autodj/enqueue", methods=["POST"])
def autodj_enqueue():
    """Operator-triggered selection, optionally from a named slot."""
    data = request.get_json(silent=True) or {}
    outcome = _get_engine().on_manual_enqueue(slot_id=data.get("slot_id"), now=data.get("now"))
    return _outcome_response(outcome)


@app.route("/api/autodj/tick", methods=["POST"])
def autodj_tick():
    data  = request.get_json(silent=True) or {}
    reset = _get_engine().on_hour_tick(now=data.get("now"))
    return jsonify({"rotation_reset": reset})


@app.route("/api/autodj/mode", methods=["GET"])
def get_mode():
    return jsonify({"mode": _get_engine().mode.value})


@app.route("/api/autodj/mode", methods=["PUT"])
def set_mode():
    data = request.get_json(silent=True) or {}
    if "mode" not in data:
        return jsonify({"error": "Missing required field: mode"}), 400
    mode = _get_engine().set_mode(data["mode"])
    return jsonify({"mode": mode.value})


@app.route("/api/queue", methods=["GET"])
def get_queue():
    return jsonify({"queue": _get_engine().queue.snapshot()})


@app.route("/api/plays", methods=["GET"])
def list_plays():
    return jsonify({"plays": list(_get_engine().plays)})


@app.route("/api/plays/audit", methods=["POST"])
def audit_recent_plays():
    """Check the engine's recent selections (or a posted list) against the current rules."""
    data   = request.get_json(silent=True) or {}
    engine = _get_engine()
    plays  = data.get("plays") if isinstance(data.get("plays"), list) else list(engine.plays)
    rules  = engine.config_store.load_clockwheel_config()["rules"]
    return jsonify(audit_plays(plays, rules))


# ---------------------------------------------------------------------------
# Listener requests
# ---------------------------------------------------------------------------

@app.route("/api/requests", methods=["POST"])
def submit_request():
    data = request.get_json(silent=True) or {}
    if not data.get("track_id"):
        return jsonify({"error": "Missing required field: track_id"}), 400
    submission = {
        "track_id":           str(data["track_id"]),
        "requester_name":     data.get("requester_name"),
        "requester_platform": data.get("requester_platform"),
        "requester_ip":       data.get("requester_ip") or request.remote_addr,
    }
    result = _get_engine().on_request_received(submission, now=data.get("now"))
    if result.status is None:
        return jsonify(result.to_dict()), 503
    return jsonify(result.to_dict()), 201 if not result.rejected else 200


@app.route("/api/requests", methods=["GET"])
def list_requests():
    log = _get_engine().requests.log
    status_filter = request.args.get("status", "pending")
    return jsonify({"requests": log.by_status(status_filter)})


@app.route("/api/requests/history", methods=["GET"])
def request_history():
    try:
        offset = max(0, int(request.args.get("offset", 0)))
        limit  = max(1, int(request.args.get("limit", 100)))
    except (ValueError, TypeError):
        offset, limit = 0, 100
    log = _get_engine().requests.log
    return jsonify({
        "total":    len(log),
        "offset":   offset,
        "limit":    limit,
        "requests": log.history(limit=limit, offset=offset),
    })


@app.route("/api/requests/<int:request_id>/accept", methods=["POST"])
def accept_request(request_id):
    result = _get_engine().accept_request(request_id)
    return jsonify(result.to_dict())


@app.route("/api/requests/<int:request_id>/reject", methods=["POST"])
def reject_request(request_id):
    data   = request.get_json(silent=True) or {}
    result = _get_engine().reject_request(request_id, data.get("reason"))
    return jsonify(result.to_dict())


@app.route("/api/requests/played", methods=["POST"])
def request_played():
    """Playout reports a track finished; flags its oldest accepted request as played."""
    data = request.get_json(silent=True) or {}
    if not data.get("track_id"):
        return jsonify({"error": "Missing required field: track_id"}), 400
    entry = _get_engine().mark_played(data["track_id"], data.get("played_at"))
    if entry is None:
        return jsonify({"error": "No accepted request for that track"}), 404
    return jsonify(entry)


if __name__ == "__main__":
    app.run(debug=True)
