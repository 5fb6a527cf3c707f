"""Tests for geomx_ir.domain.services.normalizer."""

import numpy as np
import pandas as pd
import pytest

from geomx_ir.domain.exceptions import ConfigurationError, InvariantViolationError
from geomx_ir.domain.models import NegativeControlStats, NormalizationConfig
from geomx_ir.domain.services.normalizer import BACKGROUND_LAYER, QUANTILE_LAYER, Normalizer

MODULE = "Mm_R_NGS_WTA_v1.0"


@pytest.fixture
def target_set(make_set):
    rng = np.random.default_rng(2)
    counts = pd.DataFrame(
        rng.uniform(5, 500, size=(20, 3)),
        index=[f"G{i}" for i in range(20)],
        columns=["S1", "S2", "S3"],
    )
    return make_set(counts, level="target")


@pytest.fixture
def negative_stats():
    index = pd.Index(["S1", "S2", "S3"])
    return NegativeControlStats(
        geo_mean=pd.DataFrame({MODULE: [2.0, 8.0, 4.0]}, index=index),
        geo_sd=pd.DataFrame({MODULE: [1.5, 1.5, 1.5]}, index=index),
    )


class TestQuantile:
    def test_factors_centered(self, target_set):
        factors = Normalizer(NormalizationConfig()).quantile_factors(target_set)
        assert np.exp(np.log(factors).mean()) == pytest.approx(1.0)

    def test_constant_segments(self, make_set):
        counts = pd.DataFrame({"S1": [10.0] * 4, "S2": [40.0] * 4}, index=list("ABCD"))
        factors = Normalizer(NormalizationConfig()).quantile_factors(make_set(counts, level="target"))
        assert factors.tolist() == pytest.approx([0.5, 2.0])

    def test_round_trip(self, target_set, negative_stats):
        result = Normalizer(NormalizationConfig()).normalize(target_set, negative_stats)
        layer = result.expression_set.layer(QUANTILE_LAYER)
        restored = layer.mul(result.factors[QUANTILE_LAYER], axis=1)
        np.testing.assert_allclose(restored.to_numpy(), target_set.counts.to_numpy())

    def test_raw_counts_untouched(self, target_set, negative_stats):
        before = target_set.counts.copy()
        result = Normalizer(NormalizationConfig()).normalize(target_set, negative_stats)
        pd.testing.assert_frame_equal(result.expression_set.counts, before)
        assert target_set.layers == {}

    def test_zero_quantile_rejected(self, make_set):
        counts = pd.DataFrame({"S1": [0.0] * 4, "S2": [40.0] * 4}, index=list("ABCD"))
        with pytest.raises(InvariantViolationError):
            Normalizer(NormalizationConfig()).quantile_factors(make_set(counts, level="target"))


class TestBackground:
    def test_factors(self, target_set, negative_stats):
        factors = Normalizer(NormalizationConfig()).background_factors(target_set, negative_stats)
        assert factors[MODULE].tolist() == pytest.approx([0.5, 2.0, 1.0])

    def test_layer_and_factor_table(self, target_set, negative_stats):
        result = Normalizer(NormalizationConfig()).normalize(target_set, negative_stats)
        layer = result.expression_set.layer(BACKGROUND_LAYER)
        assert layer.loc["G0", "S2"] == pytest.approx(target_set.counts.loc["G0", "S2"] / 2.0)
        assert list(result.factors.columns) == [QUANTILE_LAYER, f"{BACKGROUND_LAYER}_{MODULE}"]


class TestConfiguration:
    def test_single_method(self, target_set, negative_stats):
        config = NormalizationConfig(methods=(QUANTILE_LAYER,))
        result = Normalizer(config).normalize(target_set, negative_stats)
        assert list(result.expression_set.layers) == [QUANTILE_LAYER]

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Normalizer(NormalizationConfig(methods=("tmm",)))
        assert exc_info.value.field == "methods"

    @pytest.mark.parametrize("quantile", [0.0, 1.5])
    def test_quantile_out_of_range(self, quantile):
        with pytest.raises(ConfigurationError):
            Normalizer(NormalizationConfig(quantile=quantile))

    def test_log2(self):
        frame = pd.DataFrame({"S1": [1.0, 8.0]})
        assert Normalizer.log2(frame)["S1"].tolist() == [0.0, 3.0]
