"""
ONLINE PROGRESS TRACKER
Real-time probability propagation over a ProcessGraph, one per session.

Each accepted update cycle:
1. Guard the elapsed-time weight w (seconds since the last accepted update)
2. Reset per-cycle probability and first allocations
3. Prepare the batch (empty -> transfer, raw expansion, normalization)
4. Split each observation's confidence across the steps accepting its label
5. Idle takes whatever confidence is unassigned
6. Shift each first allocation onto unfinished ancestors that accept the
   same label, proportional to their readiness F() and capped by their
   remaining quota capacity; leftovers stay on the originating step
7. Snap tiny / saturated probabilities
8. Convert probability held over w seconds into visit probability

The tracker is not reentrant: callers serialize updates per session.
"""
import logging
import yaml
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from core.ontology import Observation
from core.preset import PresetStep
from core.process_graph import IDLE_QUOTA, Node, ProcessGraph
from core.quota import QuotaConfig
from tracking.observations import ExpansionPolicy, prepare_batch

logger = logging.getLogger("ProgressTracker")


@dataclass
class TrackerConfig:
    """Tunable constants of the update algorithm."""
    max_elapsed_seconds: float = 100000.0
    allocation_tolerance: float = 0.01      # Redistribution stops below this remaining mass
    max_redistribution_rounds: int = 5
    residual_floor: float = 0.001           # Leftover mass below this is discarded
    snap_low: float = 0.01
    snap_high: float = 1.0
    idle_quota: float = IDLE_QUOTA
    expansion_policy: ExpansionPolicy = ExpansionPolicy.CROSS_PRODUCT

    @classmethod
    def from_yaml(cls, config_path: str = "config/tracking.yaml") -> "TrackerConfig":
        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Tracking config not found, using defaults")
            return cls()

        tracker = config.get("tracker", {})
        return cls(
            max_elapsed_seconds=float(tracker.get("max_elapsed_seconds", 100000.0)),
            allocation_tolerance=float(tracker.get("allocation_tolerance", 0.01)),
            max_redistribution_rounds=int(tracker.get("max_redistribution_rounds", 5)),
            residual_floor=float(tracker.get("residual_floor", 0.001)),
            snap_low=float(tracker.get("snap_low", 0.01)),
            snap_high=float(tracker.get("snap_high", 1.0)),
            idle_quota=float(tracker.get("idle_quota", IDLE_QUOTA)),
            expansion_policy=ExpansionPolicy(tracker.get("expansion_policy", ExpansionPolicy.CROSS_PRODUCT.value)),
        )


class OnlineProgressTracker:
    """
    Incrementally distributes observation confidence across a ProcessGraph.

    Usage:
        tracker = OnlineProgressTracker(graph, quota_config)
        tracker.update([Observation.combined("screw bracket", 0.9)], 1000)
        tracker.most_probable_state()
    """

    def __init__(
        self,
        graph: ProcessGraph,
        quota_config: QuotaConfig,
        config: Optional[TrackerConfig] = None,
    ):
        self.graph = graph
        self.quota_config = quota_config
        self.config = config or TrackerConfig()
        self.last_update = 0.0
        self.accepted_updates = 0
        self.rejected_updates = 0

    def reset(self) -> None:
        """Clear all node state and the update clock (rewind to time zero)."""
        self.graph.clear()
        self.last_update = 0.0
        self.accepted_updates = 0
        self.rejected_updates = 0

    # -------------------------------------------------------------------------
    # Update cycle
    # -------------------------------------------------------------------------

    def update(self, observations: Sequence[Observation], timestamp: float) -> bool:
        """
        Run one update cycle.

        Args:
            observations: Model output at this instant (may be empty)
            timestamp: Milliseconds, on the same clock as previous updates

        Returns:
            True if the update was applied, False if it was rejected as a no-op
        """
        if self.quota_config.is_disabled:
            logger.debug("Quota disabled, skipping real-time update")
            return False

        w = (timestamp - self.last_update) / 1000
        if w <= 0 or w > self.config.max_elapsed_seconds:
            logger.info(f"Skipping update, elapsed weight out of range: {w}")
            self.rejected_updates += 1
            return False
        self.last_update = timestamp

        self.graph.reset_cycle()
        batch = prepare_batch(observations, self.config.expansion_policy)

        allocated = self._allocate(batch)
        self.graph.idle.probability = 1 - sum(o.confidence for o in batch)

        for node in allocated:
            self._redistribute(node, w)

        self._stabilize()

        for node in self.graph.all_nodes:
            node.apply_time(w, self.quota_config)

        self.accepted_updates += 1
        if logger.isEnabledFor(logging.DEBUG):
            qc = self.quota_config
            nodes = self.graph.nodes
            logger.debug(f"P: {', '.join(f'{n.probability:.3f}' for n in nodes)}")
            logger.debug(f"Visit P: {', '.join(f'{n.real_c():.3f}' for n in nodes)}")
            logger.debug(f"D: {', '.join(f'{n.D(qc):.3f}' for n in nodes)}")
            logger.debug(f"E: {', '.join(f'{n.E(qc):.3f}' for n in nodes)}")
        return True

    def _allocate(self, batch: List[Observation]) -> List[Node]:
        """First allocation: split each observation evenly across its candidate steps."""
        allocated: Dict[int, Node] = {}
        for observation in batch:
            candidates = self.graph.nodes_accepting(observation.label)
            if not candidates:
                continue
            if len(candidates) > 1 and not all(n.C() >= 1 for n in candidates):
                candidates = [n for n in candidates if n.C() < 1]
            share = observation.confidence / len(candidates)
            for node in candidates:
                node.add_first_allocation(observation.label, share)
                allocated[node.number] = node
        return [allocated[n] for n in sorted(allocated)]

    def _capacity(self, node: Node, w: float) -> float:
        """Probability a step can still absorb this cycle without overrunning its quota."""
        quota = node.calculate_quota(self.quota_config)
        return max(0.0, (quota - node.elapsed(self.quota_config)) / w - node.probability)

    def _redistribute(self, node: Node, w: float) -> None:
        qc = self.quota_config
        for label, mass in node.first_allocation.items():
            open_predecessors = [
                p for p in self.graph.eligible_predecessors(node, label) if p.F(qc) > 0
            ]
            remain = mass
            rounds = 0
            while open_predecessors and remain > self.config.allocation_tolerance:
                if rounds >= self.config.max_redistribution_rounds:
                    break
                rounds += 1
                readiness = sum(p.F(qc) for p in open_predecessors)
                round_mass = remain
                still_open = []
                for predecessor in open_predecessors:
                    share = round_mass * predecessor.F(qc) / readiness
                    placed = max(min(share, self._capacity(predecessor, w)), 0.0)
                    predecessor.add_probability(placed)
                    remain -= placed
                    if placed >= share:
                        still_open.append(predecessor)
                open_predecessors = still_open

            if remain < self.config.residual_floor:
                remain = 0.0
            node.add_probability(remain)

    def _stabilize(self) -> None:
        for node in self.graph.all_nodes:
            if node.probability <= self.config.snap_low:
                node.probability = 0.0
            elif node.probability >= self.config.snap_high:
                node.probability = 1.0

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def most_probable_state(self) -> Node:
        """The step with the highest probability this cycle, Idle when nothing beats it."""
        best = max(self.graph.nodes, key=lambda n: n.probability, default=None)
        idle = self.graph.idle
        if best is None or best.probability <= 0 or best.probability < idle.probability:
            return idle
        return best

    def most_probable_record(self) -> Optional[PresetStep]:
        """Preset record of the most probable step, None while Idle."""
        node = self.most_probable_state()
        if node.is_idle:
            return None
        return self.graph.record_for(node)
