"""
STEP TRACKING ONTOLOGY - The vocabulary of the system

This module defines the shared labels, observation records and error types
used by every layer. It contains no tracking logic.

Key Principles:
1. An Observation is a tagged variant: raw single-head prediction OR
   combined action-object pair, never an open class hierarchy
2. Step number 0 is reserved for the synthetic Idle node
3. Engine durations are seconds, timeline keys are milliseconds
"""
from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import List, Optional, Tuple
from enum import Enum


# =============================================================================
# ENUMS
# =============================================================================

class QuotaMode(str, Enum):
    """How per-step quotas are interpreted."""
    OFFSET = "offset"            # Nominal quota explicit, boundaries from ratios
    CONFIDENCE = "confidence"    # Boundaries supplied directly (running stats)
    DISABLED = "disabled"        # No real-time tracking, offline DP instead

    @classmethod
    def parse(cls, value) -> "QuotaMode":
        """Accept enum members, canonical names and the legacy aliases."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {
            "avgoffset": cls.OFFSET,
            "offset": cls.OFFSET,
            "conf": cls.CONFIDENCE,
            "confidence": cls.CONFIDENCE,
            "disabled": cls.DISABLED,
        }
        if key not in aliases:
            raise ValueError(f"Unknown quota mode: {value}")
        return aliases[key]


class PredictionHead(str, Enum):
    """Which head of the upstream two-head vision model produced a raw prediction."""
    ACTION = "action"
    OBJECT = "object"


class ObservationKind(str, Enum):
    """Tag of the Observation variant."""
    COMBINED = "combined"    # Already an action-object pair (step-level signal)
    RAW = "raw"              # Single-class prediction awaiting combination


class AlarmCategory(str, Enum):
    """Severity buckets shown to operators."""
    ERROR = "error"
    WARNING = "warning"


# Reserved identity of the synthetic Idle node
IDLE_NUMBER = 0
IDLE_NAME = "Idle"

# Action label marking a handling (transfer/handoff) step
HANDLING_ACTION = "transfer"

# Separators between a head prefix and the class name ("action_screw")
_HEAD_SEPARATORS = "_-:. "


# =============================================================================
# OBSERVATIONS
# =============================================================================

class Observation(BaseModel):
    """
    A single confidence-scored prediction at one instant.

    `label` is the string matched against step action vocabularies. Raw
    predictions carry the head that produced them and the bare class name
    that goes into a pair label; combined observations built from two raw
    predictions keep them in `constituents`.
    """
    label: str = Field(description="Action-object string matched against step actions")
    confidence: float = Field(ge=0.0, description="Model confidence, normally in [0, 1]")
    kind: ObservationKind = Field(default=ObservationKind.COMBINED)
    head: Optional[PredictionHead] = Field(
        default=None,
        description="Producing head for RAW predictions"
    )
    class_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("class_name", "class"),
        description="Model class of a RAW prediction, without the head prefix"
    )
    constituents: Optional[Tuple["Observation", "Observation"]] = Field(
        default=None,
        description="(action, object) pair a combined observation was built from"
    )

    @field_validator("label")
    @classmethod
    def strip_label(cls, v: str) -> str:
        return v.strip()

    @classmethod
    def combined(cls, label: str, confidence: float) -> "Observation":
        return cls(label=label, confidence=confidence)

    @classmethod
    def raw(cls, label: str, confidence: float, head=None, class_name: Optional[str] = None) -> "Observation":
        """
        Build a raw single-class prediction.

        When `head` is omitted it is inferred from an "action"/"object"
        prefix on the label, and the prefix is stripped to give the class
        name; a label with neither prefix has no head and can never be
        paired. An explicit `class_name` always wins.
        """
        stripped = label.strip()
        if head is None:
            lowered = stripped.lower()
            for candidate in PredictionHead:
                if lowered.startswith(candidate.value):
                    head = candidate
                    if class_name is None:
                        class_name = stripped[len(candidate.value):].lstrip(_HEAD_SEPARATORS) or None
                    break
        elif not isinstance(head, PredictionHead):
            head = PredictionHead(head)
        return cls(
            label=label,
            confidence=confidence,
            kind=ObservationKind.RAW,
            head=head,
            class_name=class_name if class_name is not None else stripped,
        )

    @classmethod
    def pair(cls, action: "Observation", obj: "Observation") -> "Observation":
        """Combine an action-head and an object-head prediction by class name."""
        return cls(
            label=f"{action.pair_name} {obj.pair_name}",
            confidence=action.confidence * obj.confidence,
            kind=ObservationKind.COMBINED,
            constituents=(action, obj),
        )

    @property
    def is_raw(self) -> bool:
        return self.kind == ObservationKind.RAW

    @property
    def pair_name(self) -> str:
        return self.class_name or self.label

    def with_confidence(self, confidence: float) -> "Observation":
        return self.model_copy(update={"confidence": confidence})


Observation.model_rebuild()


# =============================================================================
# ERRORS
# =============================================================================

class TrackingError(Exception):
    """Base class for all step-tracking failures."""
    pass


class StepNotFoundError(TrackingError, KeyError):
    """Raised when a step number has no node in the graph."""

    def __init__(self, number: int, preset: str = ""):
        self.number = number
        self.preset = preset
        where = f" in preset {preset}" if preset else ""
        super().__init__(f"Step {number} not found{where}")

    def __str__(self) -> str:
        return self.args[0]


class PresetError(TrackingError, ValueError):
    """Raised when a preset does not describe a valid step graph."""
    pass


class CyclicDependencyError(PresetError):
    """Raised when step parent links form a cycle."""

    def __init__(self, cycle: List[int]):
        self.cycle = cycle
        super().__init__(f"Cyclic step dependency detected: {' -> '.join(map(str, cycle))}")


class UnknownPresetError(TrackingError, KeyError):
    """Raised when a preset name is not present in the catalog."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown preset: {name}")

    def __str__(self) -> str:
        return self.args[0]


class QuotaConfigError(TrackingError, ValueError):
    """Raised when a quota document cannot be parsed at all."""
    pass
