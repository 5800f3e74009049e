"""
Quota configuration tests: resolution rules, fallbacks and legacy documents.
"""
import pytest
import yaml

from core.ontology import QuotaConfigError, QuotaMode
from core.preset import Preset, PresetStep
from core.quota import QuotaConfig, QuotaEntry, ResolvedQuota


def approx_quota(nominal, lower, upper):
    return ResolvedQuota(pytest.approx(nominal), pytest.approx(lower), pytest.approx(upper))


class TestOffsetMode:

    def test_default_ratios(self):
        config = QuotaConfig(mode=QuotaMode.OFFSET, quotas=[QuotaEntry(step="A", nominal=10)])
        assert config.resolve("A", 99) == approx_quota(10, 4, 16)

    def test_explicit_boundaries_win(self):
        config = QuotaConfig(quotas=[QuotaEntry(step="A", nominal=10, lower=7, upper=12)])
        assert config.resolve("A", 99) == approx_quota(10, 7, 12)

    def test_custom_ratios(self):
        config = QuotaConfig(quotas=[QuotaEntry(step="A", nominal=10, lower_ratio=0.5, upper_ratio=2.0)])
        assert config.resolve("A", 99) == approx_quota(10, 5, 20)

    def test_implausible_nominal_uses_midpoint(self):
        config = QuotaConfig(quotas=[QuotaEntry(step="A", nominal=0.001, lower=4, upper=16)])
        assert config.resolve("A", 99).nominal == pytest.approx(10)

    def test_implausible_everything_uses_real_quota(self):
        config = QuotaConfig(quotas=[QuotaEntry(step="A", nominal=0)])
        assert config.resolve("A", 8) == approx_quota(8, 3.2, 12.8)

    def test_missing_entry_synthesized(self):
        assert QuotaConfig().resolve("Unknown", 20) == approx_quota(20, 8, 32)


class TestConfidenceMode:

    def test_average_is_nominal(self):
        config = QuotaConfig(mode=QuotaMode.CONFIDENCE, quotas=[
            QuotaEntry(step="A", nominal=12, lower=6, upper=20)
        ])
        assert config.resolve("A", 99) == approx_quota(12, 6, 20)

    def test_missing_average_uses_midpoint(self):
        config = QuotaConfig(mode=QuotaMode.CONFIDENCE, quotas=[QuotaEntry(step="A", lower=6, upper=20)])
        assert config.resolve("A", 99) == approx_quota(13, 6, 20)

    def test_from_statistics(self):
        config = QuotaConfig.confidence_from_stats({"A": (10.0, 2.0), "B": (1.0, 2.0)}, width=2.0)
        assert config.mode == QuotaMode.CONFIDENCE
        assert config.resolve("A", 99) == approx_quota(10, 6, 14)
        # Lower bound never goes negative
        assert config.resolve("B", 99).lower == 0.0


class TestDisabledMode:

    def test_returns_real_quota(self):
        config = QuotaConfig.disabled()
        assert config.is_disabled
        assert config.resolve("A", 7) == approx_quota(7, 7, 7)


class TestDocuments:
    """Parsing stored quota documents, including legacy keys and string numbers."""

    def test_legacy_keys(self):
        config = QuotaConfig.from_dict({
            "quotaMode": "avgOffset",
            "quotas": [{"proc": "A", "quota": "12", "downBoundary": "5", "upBoundary": "20"}],
        })
        assert config.mode == QuotaMode.OFFSET
        assert config.resolve("A", 99) == approx_quota(12, 5, 20)

    def test_conf_alias_and_blank_average(self):
        config = QuotaConfig.from_dict({
            "mode": "conf",
            "quotas": [{"proc": "A", "avg": "", "stdDev": "1", "downBoundary": "2", "upBoundary": "6"}],
        })
        assert config.mode == QuotaMode.CONFIDENCE
        assert config.resolve("A", 99).nominal == pytest.approx(4)

    def test_disabled_is_case_insensitive(self):
        assert QuotaConfig.from_dict({"mode": "Disabled"}).is_disabled

    def test_unknown_mode_rejected(self):
        with pytest.raises(QuotaConfigError):
            QuotaConfig.from_dict({"mode": "sometimes"})

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "assembly.yaml"
        path.write_text(yaml.safe_dump({"mode": "offset", "quotas": [{"step": "A", "nominal": 30}]}))
        assert QuotaConfig.load(path).resolve("A", 1) == approx_quota(30, 12, 48)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(QuotaConfigError):
            QuotaConfig.load(tmp_path / "nope.yaml")

    def test_default_for_preset(self):
        preset = Preset(name="p", steps=[PresetStep(number=1, name="A", real_quota=15)])
        config = QuotaConfig.default_for(preset)
        assert config.mode == QuotaMode.OFFSET
        assert config.resolve("A", 1) == approx_quota(15, 6, 24)
