#!/usr/bin/env python3
"""
STEP TRACKER - Command Line Entry Point

Replays recorded sessions through the tracking engine.

Usage:
    python main.py replay session.json
    python main.py replay --filtered --alarms session.json
    python main.py stats session_1.json session_2.json
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from core.ontology import TrackingError
from core.preset import PresetCatalog
from orchestration.alerts import AlarmEvaluator
from orchestration.quota_store import ModeRegistry, QuotaConfigStore
from orchestration.session_log import SessionLog
from orchestration.timeline import TimelineReconstructor
from tracking.progress_tracker import OnlineProgressTracker, TrackerConfig
from tracking.segmenter import OfflineSegmenter, SegmenterConfig


logger = logging.getLogger("StepTracker.Main")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s',
        datefmt='%H:%M:%S'
    )


def build_reconstructor(args) -> TimelineReconstructor:
    catalog = PresetCatalog.from_directory(args.presets)
    store = QuotaConfigStore.from_directory(args.quotas, catalog)
    return TimelineReconstructor(
        catalog,
        store,
        ModeRegistry(store),
        tracker_config=TrackerConfig.from_yaml(args.config),
        segmenter=OfflineSegmenter(SegmenterConfig.from_yaml(args.config)),
    )


def replay(args) -> dict:
    reconstructor = build_reconstructor(args)
    log = SessionLog.load(args.session)

    timeline = reconstructor.reconstruct(log)
    if timeline is not None and args.filtered:
        timeline = reconstructor.filter(timeline, log.duration_ms)

    result = {
        "preset": log.preset_name,
        "duration_ms": log.duration_ms,
        "timeline": timeline.to_dict() if timeline is not None else None,
    }

    if args.alarms:
        # Alarms reflect the state at the end of the session
        graph = reconstructor.build_graph(log.preset_name)
        quota_config = reconstructor.quota_store.get(log.preset_name)
        tracker = OnlineProgressTracker(graph, quota_config, reconstructor.tracker_config)
        for ts, batch in log.batches():
            tracker.update(batch, ts)
        result["alarms"] = [a.to_dict() for a in AlarmEvaluator().evaluate(graph, quota_config)]

    return result


def stats(args) -> list:
    reconstructor = build_reconstructor(args)
    logs = [SessionLog.load(path) for path in args.sessions]
    return [
        {"step": s.step_name, "mean_ms": s.mean, "std_dev_ms": s.std_dev, "samples": s.samples}
        for s in reconstructor.all_step_statistics(logs)
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Step Tracker - probabilistic progress tracking and timeline reconstruction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Cleaned timeline of one recorded session
  python main.py replay session.json

  # Most significant dwell per step, plus end-of-session alarms
  python main.py replay --filtered --alarms session.json

  # Per-step duration statistics across sessions
  python main.py stats session_1.json session_2.json
        """
    )
    parser.add_argument("--presets", default="config/presets", help="Directory of preset YAML files")
    parser.add_argument("--quotas", default="config/quotas", help="Directory of quota YAML files (file stem = preset name)")
    parser.add_argument("--config", default="config/tracking.yaml", help="Tracking constants file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    replay_parser = sub.add_parser("replay", help="Reconstruct the timeline of a recorded session")
    replay_parser.add_argument("session", help="Session log JSON file")
    replay_parser.add_argument("--filtered", action="store_true", help="Keep only each step's longest dwell")
    replay_parser.add_argument("--alarms", action="store_true", help="Include end-of-session alarms")
    replay_parser.set_defaults(handler=replay)

    stats_parser = sub.add_parser("stats", help="Per-step duration statistics")
    stats_parser.add_argument("sessions", nargs="+", help="Session log JSON files")
    stats_parser.set_defaults(handler=stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        output = args.handler(args)
    except (TrackingError, OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
