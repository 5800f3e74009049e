"""
OBSERVATION BATCH PREPARATION
Turns one timestamp's raw model output into normalized step-level signals.

Steps, in order:
1. Empty batch -> a single ("transfer", 1.0) observation
2. Raw single-head predictions are combined per ExpansionPolicy
3. Confidences are normalized to sum to 1 (skipped when the sum is 0)
"""
import logging
from enum import Enum
from typing import List, Sequence

from core.ontology import HANDLING_ACTION, Observation, PredictionHead

logger = logging.getLogger("Observations")


class ExpansionPolicy(str, Enum):
    """
    How raw single-head predictions become step-level observations.

    CROSS_PRODUCT: with two or more raw predictions in a batch, every
        action-head prediction is paired with every object-head prediction
        (label "action object", confidence = product). Raw predictions with
        no complementary head in the batch are dropped. Pairs are ordered by
        action confidence then object confidence, both descending.
        Already-combined observations pass through untouched. A lone raw
        prediction is used as-is.
    PASSTHROUGH: raw predictions are used as-is.
    """
    CROSS_PRODUCT = "cross_product"
    PASSTHROUGH = "passthrough"


def _by_confidence(observations: Sequence[Observation]) -> List[Observation]:
    # sorted() is stable: equal confidences keep batch order
    return sorted(observations, key=lambda o: o.confidence, reverse=True)


def expand_raw_predictions(
    observations: Sequence[Observation],
    policy: ExpansionPolicy = ExpansionPolicy.CROSS_PRODUCT
) -> List[Observation]:
    """Apply the expansion policy to one batch."""
    raw = [o for o in observations if o.is_raw]
    if policy == ExpansionPolicy.PASSTHROUGH or len(raw) < 2:
        return list(observations)

    combined = [o for o in observations if not o.is_raw]
    actions = _by_confidence([o for o in raw if o.head == PredictionHead.ACTION])
    objects = _by_confidence([o for o in raw if o.head == PredictionHead.OBJECT])

    pairs = [Observation.pair(a, o) for a in actions for o in objects]
    dropped = len(raw) - (len(actions) + len(objects) if pairs else 0)
    if dropped:
        logger.debug(f"Dropped {dropped} raw predictions without a complementary head")
    logger.debug(f"Expanded {len(raw)} raw predictions into {len(pairs)} pairs")
    return combined + pairs


def normalize(observations: Sequence[Observation]) -> List[Observation]:
    """Scale confidences to sum to 1; a zero-sum batch is returned unchanged."""
    total = sum(o.confidence for o in observations)
    if total == 0:
        return list(observations)
    return [o.with_confidence(o.confidence / total) for o in observations]


def prepare_batch(
    observations: Sequence[Observation],
    policy: ExpansionPolicy = ExpansionPolicy.CROSS_PRODUCT
) -> List[Observation]:
    """
    Prepare a batch for allocation.

    Args:
        observations: The model output at one timestamp (may be empty)
        policy: Raw-prediction expansion policy

    Returns:
        Normalized step-level observations
    """
    if not observations:
        observations = [Observation.combined(HANDLING_ACTION, 1.0)]
    return normalize(expand_raw_predictions(observations, policy))
