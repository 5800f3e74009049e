"""
Observation batch preparation tests: raw expansion policies and normalization.
"""
import pytest

from core.ontology import ObservationKind, Observation, PredictionHead
from tracking.observations import (
    ExpansionPolicy,
    expand_raw_predictions,
    normalize,
    prepare_batch,
)


def labels(observations):
    return [o.label for o in observations]


class TestObservationVariants:

    def test_head_inferred_from_prefix(self):
        assert Observation.raw("action_screw", 0.5).head == PredictionHead.ACTION
        assert Observation.raw("Object_bracket", 0.5).head == PredictionHead.OBJECT
        assert Observation.raw("screw", 0.5).head is None

    def test_explicit_head(self):
        observation = Observation.raw("screw", 0.5, head="action")
        assert observation.head == PredictionHead.ACTION
        assert observation.class_name == "screw"

    def test_inferred_head_strips_prefix(self):
        assert Observation.raw("action_screw", 0.5).class_name == "screw"
        assert Observation.raw("object bracket", 0.5).class_name == "bracket"

    def test_class_name_from_document(self):
        observation = Observation.model_validate(
            {"label": "action_1", "class": "screw", "confidence": 0.5, "kind": "raw", "head": "action"}
        )
        assert observation.class_name == "screw"

    def test_pair_uses_class_names(self):
        pair = Observation.pair(Observation.raw("action_screw", 0.9), Observation.raw("object_bracket", 0.8))
        assert pair.label == "screw bracket"
        assert pair.confidence == pytest.approx(0.72)

    def test_pair_keeps_constituents(self):
        action = Observation.raw("screw", 0.8, head=PredictionHead.ACTION)
        obj = Observation.raw("bracket", 0.5, head=PredictionHead.OBJECT)
        pair = Observation.pair(action, obj)
        assert pair.label == "screw bracket"
        assert pair.confidence == pytest.approx(0.4)
        assert pair.kind == ObservationKind.COMBINED
        assert pair.constituents == (action, obj)

    def test_negative_confidence_rejected(self):
        with pytest.raises(ValueError):
            Observation.combined("screw", -0.1)


class TestCrossProduct:
    """Default policy: action head x object head."""

    def test_pairs_ordered_by_confidence(self):
        batch = [
            Observation.raw("place", 0.3, head="action"),
            Observation.raw("screw", 0.9, head="action"),
            Observation.raw("plate", 0.4, head="object"),
            Observation.raw("bracket", 0.6, head="object"),
        ]
        expanded = expand_raw_predictions(batch)
        assert labels(expanded) == [
            "screw bracket", "screw plate", "place bracket", "place plate"
        ]
        assert expanded[0].confidence == pytest.approx(0.54)

    def test_single_raw_passes_through(self):
        batch = [Observation.raw("screw", 0.7, head="action")]
        assert expand_raw_predictions(batch) == batch

    def test_unpaired_raw_dropped(self):
        batch = [
            Observation.raw("screw", 0.7, head="action"),
            Observation.raw("place", 0.2, head="action"),
        ]
        assert expand_raw_predictions(batch) == []

    def test_combined_pass_through_alongside_pairs(self):
        batch = [
            Observation.combined("pick base", 0.5),
            Observation.raw("screw", 0.5, head="action"),
            Observation.raw("bracket", 0.5, head="object"),
        ]
        assert labels(expand_raw_predictions(batch)) == ["pick base", "screw bracket"]

    def test_passthrough_policy(self):
        batch = [
            Observation.raw("screw", 0.5, head="action"),
            Observation.raw("bracket", 0.5, head="object"),
        ]
        assert expand_raw_predictions(batch, ExpansionPolicy.PASSTHROUGH) == batch


class TestNormalization:

    def test_sums_to_one(self):
        result = normalize([Observation.combined("a", 0.2), Observation.combined("b", 0.6)])
        assert [o.confidence for o in result] == [pytest.approx(0.25), pytest.approx(0.75)]

    def test_zero_sum_unchanged(self):
        batch = [Observation.combined("a", 0.0)]
        assert normalize(batch) == batch


class TestPrepareBatch:

    def test_empty_batch_becomes_transfer(self):
        batch = prepare_batch([])
        assert len(batch) == 1
        assert batch[0].label == "transfer"
        assert batch[0].confidence == 1.0

    def test_pairs_are_normalized(self):
        batch = prepare_batch([
            Observation.raw("screw", 0.8, head="action"),
            Observation.raw("place", 0.2, head="action"),
            Observation.raw("bracket", 0.5, head="object"),
        ])
        assert labels(batch) == ["screw bracket", "place bracket"]
        assert sum(o.confidence for o in batch) == pytest.approx(1.0)
        assert batch[0].confidence == pytest.approx(0.8)

    def test_all_dropped_leaves_nothing(self):
        batch = prepare_batch([
            Observation.raw("bracket", 0.5, head="object"),
            Observation.raw("plate", 0.5, head="object"),
        ])
        assert batch == []
