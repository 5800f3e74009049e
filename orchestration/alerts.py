"""
ALARM EVALUATOR
Turns ProcessGraph completion signals into operator-facing alarms.

- Each non-handling step with E() > 0 raises an out-of-order error
- Each non-handling step with D() > 0 raises a timeout error
- Handling steps are folded into one combined probability 1 - prod(1 - e)
  per signal and reported as warnings
- Nothing is raised while quota tracking is disabled
"""
import logging
import math
from dataclasses import dataclass, asdict
from typing import Callable, List

from core.ontology import AlarmCategory
from core.process_graph import ProcessGraph
from core.quota import QuotaConfig

logger = logging.getLogger("Alarms")


@dataclass
class Alarm:
    """An alarm as shown to operators."""
    message: str
    description: str
    percentage: int
    category: AlarmCategory

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


def _percent(p: float) -> int:
    # Halves round up
    return int(math.floor(p * 100 + 0.5))


class AlarmEvaluator:
    """
    Evaluates alarms for a graph and fans them out to callbacks.

    Callbacks receive every alarm of an evaluation; a failing callback is
    logged and does not stop the others.
    """

    def __init__(self):
        self._callbacks: List[Callable[[Alarm], None]] = []

    def register_callback(self, callback: Callable[[Alarm], None]):
        """Register a callback for alarms (dashboards, notifiers, etc.)."""
        self._callbacks.append(callback)

    def evaluate(self, graph: ProcessGraph, quota_config: QuotaConfig) -> List[Alarm]:
        if quota_config.is_disabled:
            return []

        alarms: List[Alarm] = []
        handling_ok_order = 1.0
        handling_in_time = 1.0

        for node in graph.nodes:
            error = node.E(quota_config)
            timeout = node.D(quota_config)

            if node.is_handling:
                handling_ok_order *= 1 - error
                handling_in_time *= 1 - timeout
                continue

            if error != 0:
                alarms.append(Alarm(
                    f"Error in Node {node.number}",
                    f"Node ({node.name}) may be done in wrong order.",
                    _percent(error),
                    AlarmCategory.ERROR,
                ))
            if timeout != 0:
                alarms.append(Alarm(
                    f"Timeout in Node {node.number}",
                    f"Node {node.name} exceeded time limit.",
                    _percent(timeout),
                    AlarmCategory.ERROR,
                ))

        handling_error = 1 - handling_ok_order
        handling_timeout = 1 - handling_in_time

        if handling_error != 0:
            alarms.append(Alarm(
                "Error in Handling",
                "Handling Node may be done in wrong order.",
                _percent(handling_error),
                AlarmCategory.WARNING,
            ))
        if handling_timeout != 0:
            alarms.append(Alarm(
                "Timeout in Handling",
                "Handling Node exceeded time limit.",
                _percent(handling_timeout),
                AlarmCategory.WARNING,
            ))

        for alarm in alarms:
            logger.info(f"[{alarm.category.value.upper()}] {alarm.message}: {alarm.percentage}%")
            for callback in self._callbacks:
                try:
                    callback(alarm)
                except Exception as e:
                    logger.error(f"Alarm callback failed: {e}")

        return alarms
