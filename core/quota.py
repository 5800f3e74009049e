"""
QUOTA CONFIGURATION
Per-step timing thresholds and tracking-mode selection.

Every lookup yields a usable (nominal, lower, upper) triple in seconds:
- offset mode: nominal explicit, boundaries from ratios unless supplied
- confidence mode: boundaries supplied, nominal = average or midpoint
- disabled mode: the step's raw quota for all three, no boundary semantics
Missing or implausible entries fall back to a default synthesized from the
step's own real quota. Nothing here raises for bad entries.
"""
import logging
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.ontology import QuotaConfigError, QuotaMode

logger = logging.getLogger("Quota")

# Below this a nominal quota is treated as absent
MIN_PLAUSIBLE_QUOTA = 0.01

DEFAULT_LOWER_RATIO = 0.4
DEFAULT_UPPER_RATIO = 1.6


@dataclass(frozen=True)
class ResolvedQuota:
    """A usable quota triple, all in seconds."""
    nominal: float
    lower: float
    upper: float


def _plausible(value: Optional[float]) -> bool:
    return value is not None and value >= MIN_PLAUSIBLE_QUOTA


class QuotaEntry(BaseModel):
    """
    One step's quota record.

    Field aliases accept the legacy document keys (proc, avg, quota,
    downBoundary, upBoundary, stdDev).
    """
    model_config = ConfigDict(populate_by_name=True)

    step: str = Field(validation_alias=AliasChoices("step", "proc", "stepName"))
    nominal: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("nominal", "quota", "avg", "average"),
    )
    std_dev: Optional[float] = Field(default=None, validation_alias=AliasChoices("std_dev", "stdDev"))
    lower: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("lower", "down_boundary", "downBoundary"),
    )
    upper: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("upper", "up_boundary", "upBoundary"),
    )
    lower_ratio: float = Field(default=DEFAULT_LOWER_RATIO, ge=0)
    upper_ratio: float = Field(default=DEFAULT_UPPER_RATIO, ge=0)

    @field_validator("nominal", "std_dev", "lower", "upper", mode="before")
    @classmethod
    def coerce_blank(cls, v):
        # Stored documents carry numbers as strings, sometimes empty
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            return float(v)
        return v

    def _midpoint(self) -> Optional[float]:
        if self.lower is None or self.upper is None:
            return None
        return (self.lower + self.upper) / 2

    def resolve(self, mode: QuotaMode, real_quota: float) -> ResolvedQuota:
        if mode == QuotaMode.DISABLED:
            return ResolvedQuota(real_quota, real_quota, real_quota)

        # Offset entries name the nominal, confidence entries the average;
        # either way the boundary midpoint stands in when it is missing
        nominal = self.nominal if _plausible(self.nominal) else self._midpoint()
        if not _plausible(nominal):
            logger.debug(f"Implausible quota for {self.step}, using real quota {real_quota}")
            nominal = real_quota

        lower = self.lower if self.lower is not None else self.lower_ratio * nominal
        upper = self.upper if self.upper is not None else self.upper_ratio * nominal
        return ResolvedQuota(nominal, lower, upper)


def synthesized_quota(real_quota: float) -> ResolvedQuota:
    """The offset-mode default built from a step's own real quota."""
    return ResolvedQuota(real_quota, DEFAULT_LOWER_RATIO * real_quota, DEFAULT_UPPER_RATIO * real_quota)


class QuotaConfig(BaseModel):
    """Quota mode plus ordered per-step entries for one preset."""
    model_config = ConfigDict(populate_by_name=True)

    mode: QuotaMode = Field(default=QuotaMode.OFFSET, validation_alias=AliasChoices("mode", "quotaMode"))
    quotas: List[QuotaEntry] = Field(default_factory=list)

    @field_validator("mode", mode="before")
    @classmethod
    def parse_mode(cls, v):
        return QuotaMode.parse(v)

    @property
    def is_disabled(self) -> bool:
        return self.mode == QuotaMode.DISABLED

    def entry_for(self, step_name: str) -> Optional[QuotaEntry]:
        for entry in self.quotas:
            if entry.step == step_name:
                return entry
        return None

    def resolve(self, step_name: str, real_quota: float) -> ResolvedQuota:
        """
        Resolve the quota triple for a step.

        Args:
            step_name: Name of the step (entries are matched by exact name)
            real_quota: The step's own configured duration, used for fallbacks

        Returns:
            ResolvedQuota in seconds
        """
        if self.is_disabled:
            return ResolvedQuota(real_quota, real_quota, real_quota)
        entry = self.entry_for(step_name)
        if entry is None:
            return synthesized_quota(real_quota)
        return entry.resolve(self.mode, real_quota)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def disabled(cls) -> "QuotaConfig":
        return cls(mode=QuotaMode.DISABLED)

    @classmethod
    def default_for(cls, preset) -> "QuotaConfig":
        """Offset-mode config with one default entry per preset step."""
        return cls(
            mode=QuotaMode.OFFSET,
            quotas=[QuotaEntry(step=s.name, nominal=s.real_quota) for s in preset.steps],
        )

    @classmethod
    def confidence_from_stats(
        cls,
        stats: Dict[str, Tuple[float, float]],
        width: float = 2.0
    ) -> "QuotaConfig":
        """
        Build a confidence-mode config from running statistics.

        Args:
            stats: step name -> (mean, stddev), in seconds
            width: number of standard deviations on each side of the mean
        """
        entries = []
        for step, (mean, std) in stats.items():
            entries.append(QuotaEntry(
                step=step,
                nominal=mean,
                std_dev=std,
                lower=max(0.0, mean - width * std),
                upper=mean + width * std,
            ))
        return cls(mode=QuotaMode.CONFIDENCE, quotas=entries)

    @classmethod
    def from_dict(cls, data: Dict) -> "QuotaConfig":
        try:
            return cls.model_validate(data)
        except (ValidationError, ValueError) as e:
            raise QuotaConfigError(f"Invalid quota config: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> "QuotaConfig":
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise QuotaConfigError(f"Cannot read quota config {path}: {e}") from e
        return cls.from_dict(data)
