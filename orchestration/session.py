"""
TRACKING SESSIONS
One ProcessGraph + OnlineProgressTracker pair per active session.

Calls into a session are synchronous and must be serialized by the caller.
A session is abandoned by discarding it; there is no cancellation hook.
"""
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from core.ontology import Observation
from core.preset import PresetCatalog, PresetStep
from core.process_graph import Node, ProcessGraph
from core.quota import QuotaConfig
from orchestration.alerts import Alarm, AlarmEvaluator
from orchestration.quota_store import ModeRegistry, QuotaConfigStore
from orchestration.session_log import SessionLog, relative_timestamp
from tracking.progress_tracker import OnlineProgressTracker, TrackerConfig

logger = logging.getLogger("Session")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProgressBar:
    """Progress of one visible step, for display."""
    index: int
    name: str
    quota: float
    parent: List[int]
    progress: float
    p: float

    @classmethod
    def from_node(cls, node: Node, quota_config: QuotaConfig) -> "ProgressBar":
        return cls(
            index=node.number,
            name=node.name,
            quota=node.calculate_quota(quota_config),
            parent=sorted(p.number for p in node.parents),
            progress=node.progress,
            p=node.probability,
        )


class TrackingSession:
    """
    A live tracking session for one preset.

    Timestamps passed to `record` may be absolute epoch ms; they are stored
    and fed to the tracker relative to the session start.
    """

    def __init__(
        self,
        graph: ProcessGraph,
        quota_store: QuotaConfigStore,
        modes: ModeRegistry,
        tracker_config: Optional[TrackerConfig] = None,
        alarms: Optional[AlarmEvaluator] = None,
        start_ms: Optional[int] = None,
        user: str = "",
    ):
        self.graph = graph
        self.preset_name = graph.preset_name
        self.quota_store = quota_store
        self.modes = modes
        self.tracker_config = tracker_config or TrackerConfig()
        self.alarm_evaluator = alarms or AlarmEvaluator()
        self.start_ms = _now_ms() if start_ms is None else start_ms
        self.user = user
        self.observations: Dict[int, List[Observation]] = {}
        self.tracker = OnlineProgressTracker(graph, self.quota_config, self.tracker_config)

    @property
    def quota_config(self) -> QuotaConfig:
        return self.quota_store.get(self.preset_name)

    def record(self, timestamp: int, observations: Sequence[Observation]) -> bool:
        """
        Store a batch and run a tracker update when quota tracking is enabled.

        Returns:
            True if the tracker accepted the update
        """
        key = relative_timestamp(timestamp, self.start_ms)
        self.observations[key] = list(observations)
        if self.modes.is_disabled(self.preset_name):
            logger.debug("Quota disabled, batch recorded for offline reconstruction only")
            return False
        self.tracker.quota_config = self.quota_config
        return self.tracker.update(observations, key)

    def rewind(self, till_seconds: float = 0.0) -> None:
        """Clear all state and replay recorded batches up to `till_seconds`."""
        logger.info(f"Rewinding session of {self.preset_name} to {till_seconds}s ({len(self.observations)} batches)")
        self.tracker.reset()
        if self.modes.is_disabled(self.preset_name):
            return
        self.tracker.quota_config = self.quota_config
        for ts, batch in sorted(self.observations.items()):
            if ts > till_seconds * 1000:
                break
            self.tracker.update(batch, ts)

    def most_probable_step(self) -> Node:
        return self.tracker.most_probable_state()

    def most_probable_record(self) -> Optional[PresetStep]:
        return self.tracker.most_probable_record()

    def progress_bars(self) -> List[ProgressBar]:
        """Visible steps plus Idle; handling steps are left out."""
        quota_config = self.quota_config
        return [
            ProgressBar.from_node(node, quota_config)
            for node in self.graph.all_nodes
            if not node.is_handling
        ]

    def alarms(self) -> List[Alarm]:
        return self.alarm_evaluator.evaluate(self.graph, self.quota_config)

    def to_log(self, end_ms: Optional[int] = None) -> SessionLog:
        return SessionLog(
            preset_name=self.preset_name,
            start_ms=self.start_ms,
            end_ms=_now_ms() if end_ms is None else end_ms,
            observations=dict(self.observations),
            user=self.user,
        )


class SessionManager:
    """
    user -> TrackingSession.

    Sessions share nothing but the read-only catalog, the quota store and
    its mode registry.
    """

    def __init__(
        self,
        catalog: PresetCatalog,
        quota_store: QuotaConfigStore,
        modes: Optional[ModeRegistry] = None,
        tracker_config: Optional[TrackerConfig] = None,
    ):
        self.catalog = catalog
        self.quota_store = quota_store
        self.modes = modes or ModeRegistry(quota_store)
        self.tracker_config = tracker_config or TrackerConfig()
        self._sessions: Dict[str, TrackingSession] = {}

    def start(self, user: str, preset_name: str, start_ms: Optional[int] = None) -> TrackingSession:
        graph = ProcessGraph.from_preset(self.catalog.get(preset_name), idle_quota=self.tracker_config.idle_quota)
        session = TrackingSession(
            graph,
            self.quota_store,
            self.modes,
            tracker_config=self.tracker_config,
            start_ms=start_ms,
            user=user,
        )
        if user in self._sessions:
            logger.warning(f"Replacing running session of {user}")
        self._sessions[user] = session
        logger.info(f"Started session of {user} on preset {preset_name}")
        return session

    def get(self, user: str) -> Optional[TrackingSession]:
        return self._sessions.get(user)

    def stop(self, user: str) -> None:
        """Discard a session without logging it."""
        self._sessions.pop(user, None)

    def stop_and_log(self, user: str, end_ms: Optional[int] = None) -> Optional[SessionLog]:
        session = self._sessions.pop(user, None)
        if session is None:
            return None
        log = session.to_log(end_ms)
        logger.info(f"Stopped session of {user}: {len(log.observations)} batches, {log.duration_ms} ms")
        return log

    def active_users(self) -> List[str]:
        return list(self._sessions)
