"""
PROCESS GRAPH
The step dependency DAG and per-step completion bookkeeping.

Edges run parent -> child: a parent must be substantially complete before
the child can be considered genuinely done. The graph shape is fixed for a
session; only the per-node probability fields change.
"""
import logging
import networkx as nx
from typing import Dict, Iterable, List, Optional, Set

from core.ontology import (
    CyclicDependencyError,
    HANDLING_ACTION,
    IDLE_NAME,
    IDLE_NUMBER,
    PresetError,
    StepNotFoundError,
)
from core.preset import Preset, PresetStep
from core.quota import QuotaConfig, ResolvedQuota

logger = logging.getLogger("ProcessGraph")

# Idle "never really completes"
IDLE_QUOTA = 1000.0


class Node:
    """
    One step of the process.

    probability        this cycle's share of observation mass (transient)
    visit_probability  quota-normalized completion mass (cumulative, may exceed 1)
    first_allocation   label -> mass awaiting redistribution this cycle
    """

    def __init__(
        self,
        number: int,
        name: str,
        real_quota: float,
        actions: Optional[List[str]] = None,
        parents: Optional[Iterable["Node"]] = None,
        fixed_quota: Optional[float] = None,
    ):
        self.number = number
        self.name = name
        self.real_quota = real_quota
        self.actions: List[str] = list(actions) if actions else [name]
        self.parents: Set["Node"] = set(parents or [])
        # Idle carries a fixed quota and skips quota-config resolution
        self.fixed_quota = fixed_quota
        self.probability = 0.0
        self.visit_probability = 0.0
        self.first_allocation: Dict[str, float] = {}

    def __repr__(self) -> str:
        return f"Node({self.number}, {self.name!r})"

    @property
    def is_idle(self) -> bool:
        return self.fixed_quota is not None

    @property
    def is_handling(self) -> bool:
        """Handling steps only move parts around and never count toward visible progress."""
        return HANDLING_ACTION in self.actions

    def can_receive_action(self, label: str) -> bool:
        """True if any action equals the label (case-insensitive), starts with it or ends with it."""
        if not label:
            return False
        lowered = label.lower()
        return any(
            a.lower() == lowered or a.startswith(label) or a.endswith(label)
            for a in self.actions
        )

    # -------------------------------------------------------------------------
    # Per-cycle mass
    # -------------------------------------------------------------------------

    def add_first_allocation(self, label: str, mass: float) -> None:
        self.first_allocation[label] = self.first_allocation.get(label, 0.0) + mass

    def add_probability(self, mass: float) -> None:
        self.probability += mass

    def reset_cycle(self) -> None:
        self.probability = 0.0
        self.first_allocation = {}

    def clear(self) -> None:
        """Reset probability and visit probability (rewind to time zero)."""
        self.reset_cycle()
        self.visit_probability = 0.0

    # -------------------------------------------------------------------------
    # Quota lookups
    # -------------------------------------------------------------------------

    def quota(self, quota_config: QuotaConfig) -> ResolvedQuota:
        if self.is_idle:
            return ResolvedQuota(self.fixed_quota, self.fixed_quota, self.fixed_quota)
        return quota_config.resolve(self.name, self.real_quota)

    def calculate_quota(self, quota_config: QuotaConfig) -> float:
        return self.quota(quota_config).nominal

    def lower_quota(self, quota_config: QuotaConfig) -> float:
        return self.quota(quota_config).lower

    def upper_quota(self, quota_config: QuotaConfig) -> float:
        return self.quota(quota_config).upper

    # -------------------------------------------------------------------------
    # Completion signals
    # -------------------------------------------------------------------------

    def C(self) -> float:
        """Completion ratio clamped to [0, 1]."""
        return min(1.0, self.visit_probability)

    def real_c(self) -> float:
        return self.visit_probability

    @property
    def progress(self) -> float:
        """Unclamped completion, as shown on progress bars."""
        return self.visit_probability

    def elapsed(self, quota_config: QuotaConfig) -> float:
        """Seconds of work credited to this step so far."""
        return self.visit_probability * self.calculate_quota(quota_config)

    def is_done(self, quota_config: QuotaConfig) -> bool:
        return self.elapsed(quota_config) >= self.lower_quota(quota_config)

    def is_timeout(self, quota_config: QuotaConfig) -> bool:
        return self.elapsed(quota_config) >= self.upper_quota(quota_config)

    def F(self, quota_config: QuotaConfig) -> float:
        """Parent readiness: product over parents of 1 if done else C(); 1 for a root."""
        readiness = 1.0
        for parent in self.parents:
            readiness *= 1.0 if parent.is_done(quota_config) else parent.C()
        return readiness

    def D(self, quota_config: QuotaConfig) -> float:
        """Timeout overshoot."""
        if self.is_timeout(quota_config):
            return max(0.0, self.visit_probability - 1)
        return 0.0

    def E(self, quota_config: QuotaConfig) -> float:
        """Out-of-order signal: completion accrued while parents were not ready."""
        return self.C() * (1 - self.F(quota_config))

    def apply_time(self, w: float, quota_config: QuotaConfig) -> None:
        """Convert this cycle's probability held over `w` seconds into completion mass."""
        self.visit_probability += self.probability * max(w, 0.0) / self.calculate_quota(quota_config)


class ProcessGraph:
    """
    The step DAG of one session plus the synthetic Idle node.

    Owns the node <-> preset-record registry, so lookups are scoped to the
    graph rather than held in process-wide caches. Ancestor sets are computed
    once at construction.
    """

    def __init__(self, preset_name: str = "", idle_quota: float = IDLE_QUOTA):
        self.preset_name = preset_name
        self.dag = nx.DiGraph()
        self.idle = Node(IDLE_NUMBER, IDLE_NAME, idle_quota, fixed_quota=idle_quota)
        self._nodes: Dict[int, Node] = {}
        self._records: Dict[int, PresetStep] = {}
        self._ancestors: Dict[int, Set[int]] = {}

    @classmethod
    def from_preset(cls, preset: Preset, idle_quota: float = IDLE_QUOTA) -> "ProcessGraph":
        """
        Build the graph for a preset.

        Raises:
            PresetError: duplicate or reserved step numbers, unknown parents
            CyclicDependencyError: parent links form a cycle
        """
        graph = cls(preset.name, idle_quota=idle_quota)

        for step in preset.steps:
            if step.number == IDLE_NUMBER:
                raise PresetError(f"Step number {IDLE_NUMBER} is reserved for {IDLE_NAME}")
            if step.number in graph._nodes:
                raise PresetError(f"Duplicate step number {step.number} in preset {preset.name}")
            graph._nodes[step.number] = Node(step.number, step.name, step.real_quota, step.actions)
            graph._records[step.number] = step
            graph.dag.add_node(step.number)

        for step in preset.steps:
            node = graph._nodes[step.number]
            for parent_number in step.parents:
                if parent_number not in graph._nodes:
                    raise PresetError(
                        f"Step {step.number} names unknown parent {parent_number} in preset {preset.name}"
                    )
                node.parents.add(graph._nodes[parent_number])
                graph.dag.add_edge(parent_number, step.number)

        if not nx.is_directed_acyclic_graph(graph.dag):
            cycle_edges = nx.find_cycle(graph.dag)
            cycle = [u for u, _ in cycle_edges] + [cycle_edges[0][0]]
            raise CyclicDependencyError(cycle)

        graph._ancestors = {n: nx.ancestors(graph.dag, n) for n in graph._nodes}
        logger.debug(f"Built graph for {preset.name}: {len(graph._nodes)} steps, {graph.dag.number_of_edges()} edges")
        return graph

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @property
    def nodes(self) -> List[Node]:
        """Step nodes ordered by number (Idle excluded)."""
        return [self._nodes[n] for n in sorted(self._nodes)]

    @property
    def all_nodes(self) -> List[Node]:
        return self.nodes + [self.idle]

    def __len__(self) -> int:
        return len(self._nodes)

    def node_by_number(self, number: int) -> Node:
        if number == IDLE_NUMBER:
            return self.idle
        if number not in self._nodes:
            raise StepNotFoundError(number, self.preset_name)
        return self._nodes[number]

    def record_for(self, node: Node) -> PresetStep:
        """The preset record a step node was built from."""
        if node.number not in self._records or self._nodes[node.number] is not node:
            raise StepNotFoundError(node.number, self.preset_name)
        return self._records[node.number]

    def nodes_accepting(self, label: str) -> List[Node]:
        return [n for n in self.nodes if n.can_receive_action(label)]

    def is_ancestor(self, candidate: Node, node: Node) -> bool:
        """True if `candidate` is a strict ancestor of `node`."""
        return candidate.number in self._ancestors.get(node.number, set())

    def eligible_predecessors(self, node: Node, label: str) -> List[Node]:
        """Strict ancestors of `node` that also accept `label`."""
        return [n for n in self.nodes_accepting(label) if self.is_ancestor(n, node)]

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def reset_cycle(self) -> None:
        for node in self.all_nodes:
            node.reset_cycle()

    def clear(self) -> None:
        for node in self.all_nodes:
            node.clear()
        logger.debug(f"Cleared graph state for {self.preset_name}")
