"""
Online progress tracker tests.

Covers the update guard, first allocation, redistribution onto ancestors
(including the round cap), stabilization and the most-probable-state query.
"""
import random

import pytest
import yaml

from core.ontology import Observation
from core.preset import Preset, PresetStep
from core.process_graph import ProcessGraph
from core.quota import QuotaConfig
from tracking.observations import ExpansionPolicy
from tracking.progress_tracker import OnlineProgressTracker, TrackerConfig


def make_tracker(steps, config=None, quota_config=None):
    preset = Preset(name="test", steps=steps)
    graph = ProcessGraph.from_preset(preset)
    return OnlineProgressTracker(graph, quota_config or QuotaConfig.default_for(preset), config)


def seen(label, confidence=1.0):
    return [Observation.combined(label, confidence)]


class TestSingleStep:
    """One step "A" with a 10s quota observed every second."""

    @pytest.fixture
    def tracker(self):
        return make_tracker([PresetStep(number=1, name="A", real_quota=10, actions=["assemble"])])

    def test_completes_after_quota(self, tracker):
        """Full confidence for the whole quota credits exactly one quota of work."""
        node = tracker.graph.node_by_number(1)
        for second in range(1, 11):
            assert tracker.update(seen("assemble"), second * 1000)
        assert node.visit_probability == pytest.approx(1.0)
        assert node.is_done(tracker.quota_config)
        assert tracker.most_probable_state() is node

    def test_not_done_early(self, tracker):
        for second in range(1, 4):
            tracker.update(seen("assemble"), second * 1000)
        assert not tracker.graph.node_by_number(1).is_done(tracker.quota_config)

    def test_zero_elapsed_is_noop(self, tracker):
        """A repeated timestamp must not touch visit probabilities."""
        tracker.update(seen("assemble"), 1000)
        before = [n.visit_probability for n in tracker.graph.all_nodes]
        assert not tracker.update(seen("assemble"), 1000)
        assert [n.visit_probability for n in tracker.graph.all_nodes] == before
        assert tracker.rejected_updates == 1

    def test_huge_elapsed_is_noop(self, tracker):
        tracker.update(seen("assemble"), 1000)
        before = [n.visit_probability for n in tracker.graph.all_nodes]
        assert not tracker.update(seen("assemble"), 1000 + 100001 * 1000)
        assert [n.visit_probability for n in tracker.graph.all_nodes] == before

    def test_rejected_update_keeps_clock(self, tracker):
        tracker.update(seen("assemble"), 5000)
        tracker.update(seen("assemble"), 4000)
        assert tracker.last_update == 5000
        assert tracker.update(seen("assemble"), 6000)
        assert tracker.graph.node_by_number(1).visit_probability == pytest.approx(0.6)

    def test_reset(self, tracker):
        tracker.update(seen("assemble"), 2000)
        tracker.reset()
        assert tracker.last_update == 0
        assert tracker.graph.node_by_number(1).visit_probability == 0

    def test_disabled_quota_skips_updates(self):
        tracker = make_tracker(
            [PresetStep(number=1, name="A", real_quota=10, actions=["assemble"])],
            quota_config=QuotaConfig.disabled(),
        )
        assert not tracker.update(seen("assemble"), 1000)
        assert tracker.graph.node_by_number(1).visit_probability == 0


class TestAllocation:

    def test_split_between_independent_steps(self):
        tracker = make_tracker([
            PresetStep(number=1, name="Left", real_quota=10, actions=["screw"]),
            PresetStep(number=2, name="Right", real_quota=10, actions=["screw"]),
        ])
        tracker.update(seen("screw"), 1000)
        left, right = tracker.graph.nodes
        assert left.probability == pytest.approx(0.5)
        assert right.probability == pytest.approx(0.5)
        assert left.visit_probability == pytest.approx(0.05)

    def test_complete_candidates_skipped(self):
        tracker = make_tracker([
            PresetStep(number=1, name="Left", real_quota=10, actions=["screw"]),
            PresetStep(number=2, name="Right", real_quota=10, actions=["screw"]),
        ])
        left, right = tracker.graph.nodes
        left.visit_probability = 1.0
        tracker.update(seen("screw"), 1000)
        assert left.probability == 0
        assert right.probability == pytest.approx(1.0)

    def test_unmatched_zero_confidence_goes_to_idle(self):
        tracker = make_tracker([PresetStep(number=1, name="A", real_quota=10, actions=["assemble"])])
        tracker.update(seen("assemble", 0.0), 1000)
        assert tracker.graph.idle.probability == 1.0
        assert tracker.most_probable_state() is tracker.graph.idle
        assert tracker.most_probable_record() is None

    def test_empty_batch_credits_handling_step(self):
        tracker = make_tracker([
            PresetStep(number=1, name="Place", real_quota=10, actions=["place"]),
            PresetStep(number=2, name="Move", real_quota=5, actions=["transfer"], parents=[1]),
        ])
        tracker.update([], 1000)
        move = tracker.graph.node_by_number(2)
        assert move.probability == 1.0
        assert tracker.most_probable_state() is move

    def test_raw_predictions_are_paired(self):
        tracker = make_tracker([
            PresetStep(number=1, name="Mount", real_quota=10, actions=["screw bracket"]),
        ])
        tracker.update([
            Observation.raw("screw", 0.9, head="action"),
            Observation.raw("bracket", 0.8, head="object"),
        ], 1000)
        assert tracker.most_probable_record().name == "Mount"

    def test_prefixed_raw_predictions_are_paired(self):
        """Heads inferred from "action_"/"object_" prefixes still pair into a step label."""
        tracker = make_tracker([
            PresetStep(number=1, name="Mount", real_quota=10, actions=["screw bracket"]),
        ])
        tracker.update([
            Observation.raw("action_screw", 0.9),
            Observation.raw("object_bracket", 0.8),
        ], 1000)
        mount = tracker.graph.node_by_number(1)
        assert mount.probability == pytest.approx(1.0)
        assert tracker.most_probable_state() is mount

    def test_passthrough_policy_from_config(self):
        tracker = make_tracker(
            [PresetStep(number=1, name="Mount", real_quota=10, actions=["screw bracket"])],
            config=TrackerConfig(expansion_policy=ExpansionPolicy.PASSTHROUGH),
        )
        tracker.update([
            Observation.raw("screw", 0.5, head="action"),
            Observation.raw("bracket", 0.5, head="object"),
        ], 1000)
        # Both raw labels match the step on their own
        assert tracker.graph.node_by_number(1).probability == pytest.approx(1.0)


class TestRedistribution:

    def test_mass_moves_to_unfinished_ancestor(self):
        tracker = make_tracker([
            PresetStep(number=1, name="First", real_quota=10, actions=["screw"]),
            PresetStep(number=2, name="Second", real_quota=10, actions=["screw"], parents=[1]),
        ])
        tracker.update(seen("screw"), 1000)
        first, second = tracker.graph.nodes
        assert first.probability == pytest.approx(1.0)
        assert second.probability == 0
        assert tracker.most_probable_state() is first

    def test_saturated_ancestor_returns_mass(self):
        tracker = make_tracker([
            PresetStep(number=1, name="First", real_quota=10, actions=["screw"]),
            PresetStep(number=2, name="Second", real_quota=10, actions=["screw"], parents=[1]),
        ])
        first, second = tracker.graph.nodes
        first.visit_probability = 1.0
        tracker.update(seen("screw"), 1000)
        assert second.probability == pytest.approx(1.0)

    @pytest.fixture
    def fan_in(self):
        """Two roots feeding step 3; step 1 can absorb almost nothing over 10s."""
        return [
            PresetStep(number=1, name="Tiny", real_quota=1, actions=["screw"]),
            PresetStep(number=2, name="Roomy", real_quota=100, actions=["screw"]),
            PresetStep(number=3, name="Join", real_quota=10, actions=["screw"], parents=[1, 2]),
        ]

    def test_single_round_leaves_remainder_on_origin(self, fan_in):
        """Tiny saturates in round one; with no second round its share falls back to Join."""
        tracker = make_tracker(fan_in, config=TrackerConfig(max_redistribution_rounds=1))
        tracker.update(seen("screw"), 10000)
        tiny, roomy, join = tracker.graph.nodes
        assert tiny.probability == pytest.approx(1 / 3)
        assert roomy.probability == pytest.approx(1 / 2)
        assert join.probability == pytest.approx(1 / 6)

    def test_second_round_fills_open_ancestor(self, fan_in):
        tracker = make_tracker(fan_in, config=TrackerConfig(max_redistribution_rounds=2))
        tracker.update(seen("screw"), 10000)
        tiny, roomy, join = tracker.graph.nodes
        assert roomy.probability == pytest.approx(2 / 3)
        assert join.probability == 0

    def test_default_cap_converges_like_two_rounds(self, fan_in):
        tracker = make_tracker(fan_in)
        tracker.update(seen("screw"), 10000)
        assert tracker.graph.node_by_number(3).probability == 0
        assert tracker.graph.node_by_number(2).probability == pytest.approx(2 / 3)


class TestInvariants:

    def test_visit_monotonic_and_completion_bounded(self):
        """Random batches over a branching preset never decrease visit probability."""
        tracker = make_tracker([
            PresetStep(number=1, name="Place", real_quota=8, actions=["place base"]),
            PresetStep(number=2, name="Move", real_quota=3, actions=["transfer"], parents=[1]),
            PresetStep(number=3, name="Mount", real_quota=12, actions=["screw bracket", "place bracket"], parents=[1]),
            PresetStep(number=4, name="Fasten", real_quota=6, actions=["screw cover"], parents=[3]),
        ])
        rng = random.Random(42)
        vocabulary = ["place", "screw", "transfer", "bracket", "weld"]
        now = 0
        previous = [0.0] * len(tracker.graph.all_nodes)
        for _ in range(200):
            now += rng.randint(100, 3000)
            batch = [
                Observation.combined(rng.choice(vocabulary), rng.random())
                for _ in range(rng.randint(0, 3))
            ]
            tracker.update(batch, now)
            current = [n.visit_probability for n in tracker.graph.all_nodes]
            assert all(c >= p for c, p in zip(current, previous))
            assert all(0.0 <= n.C() <= 1.0 for n in tracker.graph.all_nodes)
            previous = current


class TestTrackerConfig:

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "tracking.yaml"
        path.write_text(yaml.safe_dump({
            "tracker": {"max_redistribution_rounds": 2, "expansion_policy": "passthrough"}
        }))
        config = TrackerConfig.from_yaml(str(path))
        assert config.max_redistribution_rounds == 2
        assert config.expansion_policy == ExpansionPolicy.PASSTHROUGH
        assert config.max_elapsed_seconds == 100000.0

    def test_missing_file_uses_defaults(self, tmp_path):
        assert TrackerConfig.from_yaml(str(tmp_path / "missing.yaml")) == TrackerConfig()
