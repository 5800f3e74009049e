"""
SESSION LOG
A finished session as handed to the persistence collaborator: preset name,
wall-clock bounds and every observation batch keyed by session-relative ms.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from core.ontology import Observation
from core.process_graph import ProcessGraph
from tracking.observations import ExpansionPolicy, expand_raw_predictions

logger = logging.getLogger("SessionLog")


def relative_timestamp(timestamp: int, start_ms: int) -> int:
    """Offset a timestamp from session start; already-relative values pass through."""
    return timestamp - start_ms if timestamp >= start_ms else timestamp


@dataclass
class SessionLog:
    """Recorded observations of one session."""
    preset_name: str
    start_ms: int = 0
    end_ms: int = 0
    observations: Dict[int, List[Observation]] = field(default_factory=dict)
    user: str = ""

    @property
    def duration_ms(self) -> int:
        return max(0, self.end_ms - self.start_ms)

    def batches(self) -> List[Tuple[int, List[Observation]]]:
        """Observation batches in timestamp order."""
        return sorted(self.observations.items())

    def offline_candidates(
        self,
        graph: ProcessGraph,
        policy: ExpansionPolicy = ExpansionPolicy.CROSS_PRODUCT
    ) -> Dict[int, List[int]]:
        """
        timestamp -> step numbers accepting each observed label.

        Handling steps are left out: they never form a segment of their own.
        """
        candidates: Dict[int, List[int]] = {}
        for ts, batch in self.batches():
            numbers: List[int] = []
            for observation in expand_raw_predictions(batch, policy):
                numbers.extend(
                    n.number for n in graph.nodes_accepting(observation.label) if not n.is_handling
                )
            candidates[ts] = numbers
        return candidates

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict:
        return {
            "preset": self.preset_name,
            "user": self.user,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "observations": {
                str(ts): [o.model_dump(mode="json", exclude_none=True) for o in batch]
                for ts, batch in self.batches()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionLog":
        start_ms = int(data.get("start_ms", 0))
        observations: Dict[int, List[Observation]] = {}
        for ts, batch in (data.get("observations") or {}).items():
            key = relative_timestamp(int(ts), start_ms)
            observations[key] = [Observation.model_validate(o) for o in batch or []]
        return cls(
            preset_name=data["preset"],
            start_ms=start_ms,
            end_ms=int(data.get("end_ms", start_ms)),
            observations=observations,
            user=data.get("user", ""),
        )

    def save(self, path: str) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Session log written: {path}")

    @classmethod
    def load(cls, path: str) -> "SessionLog":
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))
