import argparse
import json
import logging
import random
from datetime import datetime, timedelta
from pathlib import Path

from rotation.audit import audit_plays
from rotation.engine import RotationEngine
from rotation.errors import ConfigError
from rotation.models import parse_ts
from rotation.ports import InMemoryLibrary, PlayoutQueue, StaticConfigStore


def load_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


def load_library(path: Path) -> InMemoryLibrary:
    """Tracks from a JSON array or a {"tracks": [...]} document."""
    raw = load_json(path)
    tracks = raw if isinstance(raw, list) else raw.get("tracks", [])
    return InMemoryLibrary(tracks)


def load_config(path: Path) -> StaticConfigStore:
    """Clockwheel (and optional request policy) from a JSON document.

    Either the clockwheel itself, or {"clockwheel": {...}, "request_policy": {...}}.
    """
    if path is None:
        return StaticConfigStore()
    raw = load_json(path)
    if "clockwheel" in raw:
        return StaticConfigStore(raw["clockwheel"], raw.get("request_policy"))
    return StaticConfigStore(raw)


def main():
    parser = argparse.ArgumentParser(description="Simulate AutoDJ selections against a track library.")
    parser.add_argument("--library", required=True, help="Track library JSON file")
    parser.add_argument("--config", help="Clockwheel config JSON file (defaults if omitted)")
    parser.add_argument("--count", type=int, default=12, help="Number of selections to make")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible runs")
    parser.add_argument("--start", help="Simulated start time, ISO format (default: now)")
    parser.add_argument("--spacing-minutes", type=float, default=4.0,
                        help="Simulated minutes between selections")
    parser.add_argument("--verbose", action="store_true", help="Log every filter decision")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    library = load_library(Path(args.library))
    try:
        config_store = load_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        raise SystemExit(f"Invalid config: {exc}")

    start = parse_ts(args.start) if args.start else parse_ts(datetime.now())
    if start is None:
        raise SystemExit(f'Cannot parse --start "{args.start}"')

    queue  = PlayoutQueue()
    engine = RotationEngine(library, queue, config_store, rng=random.Random(args.seed))

    title = f"AutoDJ simulation from {start:%Y-%m-%d %H:%M}"
    print(f"\n{title}")
    print("=" * len(title))

    now = start
    for idx in range(1, args.count + 1):
        if idx > 1 and now.hour != (now - timedelta(minutes=args.spacing_minutes)).hour:
            engine.on_hour_tick(now)
        outcome = engine.on_queue_empty(now)
        stamp = f"{now:%H:%M}"
        if outcome.selected:
            track = library.get_track(outcome.track_id)
            mm, ss = divmod(int(track.get("duration_seconds") or 0), 60)
            print(f"\n{idx:>3}. {stamp}  ✓ {track.get('title')} - {track.get('artist')} [{mm}:{ss:02d}]")
            print(f"     Slot: {outcome.slot_id}  Method: {outcome.method.value}  Weight now: {track.get('weight'):g}")
            if outcome.relaxed:
                print(f"     Relaxed: {', '.join(outcome.relaxed_rules)}")
            queue.dequeue()
        else:
            print(f"\n{idx:>3}. {stamp}  ✗ EMPTY")
            print(f"     Why: {outcome.reason}")
        now += timedelta(minutes=args.spacing_minutes)

    rules  = config_store.load_clockwheel_config()["rules"]
    report = audit_plays(list(engine.plays), rules)
    stats  = report["stats"]
    print(f"\n{stats['total_plays']} plays, {stats['unique_tracks']} unique tracks, "
          f"{stats['unique_artists']} artists, {stats['relaxed_plays']} relaxed")
    for v in report["violations"][:5]:
        print(f"  - [{v['severity']}] {v['message']}")
    if len(report["violations"]) > 5:
        print(f"  - (+{len(report['violations']) - 5} more)")

    print("\nDone.\n")


if __name__ == "__main__":
    main()
