"""
TIMELINE RECONSTRUCTION
Retrospective answer to "when did each step actually occur".

Mode selection per preset:
- quota tracking enabled  -> replay batches through an OnlineProgressTracker
- quota tracking disabled -> one OfflineSegmenter pass over the session

Raw timelines are cleaned (leading noise re-seeded, repeated steps
collapsed), can be reduced to each step's most significant dwell, and feed
per-step duration statistics.
"""
import logging
import statistics
from bisect import bisect_right, insort
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from core.ontology import StepNotFoundError
from core.preset import PresetCatalog
from core.process_graph import Node, ProcessGraph
from core.quota import QuotaConfig
from orchestration.quota_store import ModeRegistry, QuotaConfigStore
from orchestration.session_log import SessionLog
from tracking.progress_tracker import OnlineProgressTracker, TrackerConfig
from tracking.segmenter import OfflineSegmenter

logger = logging.getLogger("Timeline")


class Timeline:
    """
    Ordered mapping timestamp (ms) -> Node with strictly increasing keys.

    A timeline produced by TimelineReconstructor.filter is keyed by dwell
    time instead and is marked `dwell_keyed`.
    """

    def __init__(self, entries: Optional[Mapping[int, Node]] = None, dwell_keyed: bool = False):
        self._entries: Dict[int, Node] = dict(sorted((entries or {}).items()))
        self._keys: List[int] = list(self._entries)
        self.dwell_keyed = dwell_keyed

    def put(self, key: int, node: Node) -> None:
        if key in self._entries:
            self._entries[key] = node
            return
        if not self._keys or key > self._keys[-1]:
            self._entries[key] = node
            self._keys.append(key)
            return
        insort(self._keys, key)
        self._entries[key] = node
        self._entries = {k: self._entries[k] for k in self._keys}

    def keys(self) -> List[int]:
        return list(self._keys)

    def values(self) -> List[Node]:
        return list(self._entries.values())

    def items(self) -> List[Tuple[int, Node]]:
        return list(self._entries.items())

    def first_key(self) -> int:
        return self._keys[0]

    def higher_key(self, key: int) -> Optional[int]:
        idx = bisect_right(self._keys, key)
        return self._keys[idx] if idx < len(self._keys) else None

    def step_numbers(self) -> List[int]:
        return [n.number for n in self._entries.values()]

    def to_dict(self) -> Dict[int, Dict]:
        return {ts: {"number": n.number, "name": n.name} for ts, n in self._entries.items()}

    def __getitem__(self, key: int) -> Node:
        return self._entries[key]

    def __contains__(self, key: int) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Timeline):
            return NotImplemented
        return self.dwell_keyed == other.dwell_keyed and self.items() == other.items()

    def __repr__(self) -> str:
        body = ", ".join(f"{ts}: {n.number}" for ts, n in self._entries.items())
        return f"Timeline({{{body}}})"


@dataclass
class StepStats:
    """Dwell-time statistics of one step across sessions, in ms."""
    step_name: str
    mean: float
    std_dev: float
    samples: int


def dwell_time(timeline: Timeline, key: int, end: int) -> int:
    """Time from `key` until the next entry (or `end`); negative deltas wrap by the first key."""
    following = timeline.higher_key(key)
    delta = (end if following is None else following) - key
    if delta < 0:
        delta += timeline.first_key()
    return delta


class TimelineReconstructor:
    """
    Rebuilds step timelines from recorded sessions.

    The disabled-mode answer per preset comes from the ModeRegistry, which
    the QuotaConfigStore invalidates on config changes.
    """

    def __init__(
        self,
        catalog: PresetCatalog,
        quota_store: QuotaConfigStore,
        modes: Optional[ModeRegistry] = None,
        tracker_config: Optional[TrackerConfig] = None,
        segmenter: Optional[OfflineSegmenter] = None,
    ):
        self.catalog = catalog
        self.quota_store = quota_store
        self.modes = modes or ModeRegistry(quota_store)
        self.tracker_config = tracker_config or TrackerConfig()
        self.segmenter = segmenter or OfflineSegmenter()

    def build_graph(self, preset_name: str) -> ProcessGraph:
        return ProcessGraph.from_preset(self.catalog.get(preset_name), idle_quota=self.tracker_config.idle_quota)

    # -------------------------------------------------------------------------
    # Raw timelines
    # -------------------------------------------------------------------------

    def raw_timeline(self, log: SessionLog) -> Optional[Timeline]:
        """
        Most-likely step over time, before cleaning.

        Returns:
            Timeline, or None when offline segmentation has no partition
        """
        graph = self.build_graph(log.preset_name)
        if self.modes.is_disabled(log.preset_name):
            return self._offline_timeline(log, graph)
        return self._online_timeline(log, graph)

    def _online_timeline(self, log: SessionLog, graph: ProcessGraph) -> Timeline:
        tracker = OnlineProgressTracker(graph, self.quota_store.get(log.preset_name), self.tracker_config)
        timeline = Timeline()
        for ts, batch in log.batches():
            if tracker.update(batch, ts):
                timeline.put(ts, tracker.most_probable_state())
        logger.debug(
            f"Replayed {tracker.accepted_updates} batches for {log.preset_name} "
            f"({tracker.rejected_updates} rejected)"
        )
        return timeline

    def _offline_timeline(self, log: SessionLog, graph: ProcessGraph) -> Optional[Timeline]:
        candidates = log.offline_candidates(graph, self.tracker_config.expansion_policy)
        if not any(candidates.values()):
            logger.info(f"No step evidence in session of {log.preset_name}")
            return Timeline()

        boundaries = self.segmenter.partition_steps(candidates)
        if boundaries is None:
            logger.warning(f"Skipping offline reconstruction for {log.preset_name}: no partition available")
            return None

        starts = [min(candidates)] + list(boundaries)
        timeline = Timeline()
        for number, ts in enumerate(starts, start=1):
            try:
                timeline.put(ts, graph.node_by_number(number))
            except StepNotFoundError as e:
                logger.warning(f"Offline reconstruction: {e}, continuing")
        return timeline

    # -------------------------------------------------------------------------
    # Cleaning
    # -------------------------------------------------------------------------

    @staticmethod
    def clean(raw: Timeline) -> Timeline:
        """
        Re-seed the first entry with the lowest-numbered step ever observed,
        then keep only the instants where the step changes.
        """
        if not len(raw):
            return Timeline()

        entries = dict(raw.items())
        observed = [n for n in entries.values() if not n.is_idle]
        if observed:
            entries[raw.first_key()] = min(observed, key=lambda n: n.number)

        cleaned = Timeline()
        previous = None
        for ts, node in entries.items():
            if previous is not None and node.number == previous:
                continue
            cleaned.put(ts, node)
            previous = node.number
        return cleaned

    def reconstruct(self, log: SessionLog) -> Optional[Timeline]:
        raw = self.raw_timeline(log)
        if raw is None:
            return None
        return self.clean(raw)

    @staticmethod
    def filter(timeline: Optional[Timeline], duration: int) -> Optional[Timeline]:
        """
        Keep, per step number, only the occurrence with the longest dwell,
        keyed by that dwell time.

        Args:
            timeline: A timestamp-keyed timeline
            duration: Session duration in ms (end of the last dwell)

        Returns:
            A dwell-keyed timeline; a dwell-keyed input is returned unchanged
        """
        if timeline is None:
            return None
        if timeline.dwell_keyed:
            return timeline

        items = timeline.items()
        dwell = {ts: dwell_time(timeline, ts, duration) for ts, _ in items}

        longest: Dict[int, int] = {}
        for ts, node in items:
            if node.number not in longest or dwell[ts] > longest[node.number]:
                longest[node.number] = dwell[ts]

        kept: Dict[int, Node] = {}
        placed = set()
        for ts, node in items:
            if node.number in placed or dwell[ts] != longest[node.number]:
                continue
            key = dwell[ts]
            while key in kept:
                key += 1
            kept[key] = node
            placed.add(node.number)
        return Timeline(kept, dwell_keyed=True)

    def filtered(self, log: SessionLog) -> Optional[Timeline]:
        return self.filter(self.reconstruct(log), log.duration_ms)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def step_statistics(self, preset_name: str, logs: List[SessionLog]) -> List[StepStats]:
        """Mean and sample standard deviation of each step's dwell time across sessions."""
        durations: Dict[str, List[int]] = {}
        for log in logs:
            if log.preset_name != preset_name:
                continue
            timeline = self.reconstruct(log)
            if timeline is None:
                continue
            for ts, node in timeline.items():
                if node.is_idle:
                    continue
                durations.setdefault(node.name, []).append(dwell_time(timeline, ts, log.duration_ms))

        results = []
        for name, values in durations.items():
            mean = statistics.mean(values)
            std = statistics.stdev(values, mean) if len(values) > 1 else 0.0
            results.append(StepStats(name, mean, std, len(values)))
        return results

    def all_step_statistics(self, logs: List[SessionLog]) -> List[StepStats]:
        """Statistics for every preset present in `logs`, named "preset.step"."""
        results = []
        for preset_name in sorted({log.preset_name for log in logs}):
            for stats in self.step_statistics(preset_name, logs):
                stats.step_name = f"{preset_name}.{stats.step_name}"
                results.append(stats)
        return results

    def quota_config_from_statistics(
        self,
        preset_name: str,
        logs: List[SessionLog],
        width: float = 2.0
    ) -> QuotaConfig:
        """Confidence-mode quota config derived from recorded sessions."""
        stats = {
            s.step_name: (s.mean / 1000, s.std_dev / 1000)
            for s in self.step_statistics(preset_name, logs)
        }
        return QuotaConfig.confidence_from_stats(stats, width=width)
