"""Tests for geomx_ir.domain.services.segment_qc."""

import numpy as np
import pandas as pd
import pytest

from geomx_ir.domain.exceptions import ConfigurationError, EmptyResultError
from geomx_ir.domain.models import NegativeControlStats, SegmentQCThresholds
from geomx_ir.domain.services.segment_qc import PASS, WARNING, SegmentQCFilter


def negative_stats(segments, geo_mean=5.0):
    frame = pd.DataFrame({"Mm_R_NGS_WTA_v1.0": geo_mean}, index=pd.Index(list(segments)))
    return NegativeControlStats(geo_mean=frame, geo_sd=frame * 0 + 1.5)


@pytest.fixture
def four_segments(make_set, make_segment_info):
    segments = ["S1", "S2", "S3", "S4"]
    info = make_segment_info(segments, Raw=100.0, Trimmed=[90.0, 70.0, 85.0, 95.0],
                             Stitched=90.0, Aligned=90.0, DeduplicatedReads=20.0)
    counts = pd.DataFrame(50.0, index=["Neg1", "Gene1"], columns=segments)
    return make_set(counts, targets=["NegProbe", "Gene1"],
                    code_classes=["Negative", "Endogenous"], segment_info=info)


class TestFlagSegments:
    def test_trimmed_example(self, four_segments):
        qc = SegmentQCFilter(SegmentQCThresholds(min_segment_reads=50))
        result = qc.flag_segments(four_segments, negative_stats(four_segments.segments))
        assert result.flags["LowTrimmed"].tolist() == [False, True, False, False]
        assert result.status.tolist() == [PASS, WARNING, PASS, PASS]
        assert result.passed == ["S1", "S3", "S4"]

    def test_saturation_derived_from_reads(self, four_segments):
        qc = SegmentQCFilter(SegmentQCThresholds(min_segment_reads=50))
        metrics = qc.compute_metrics(
            four_segments.segment_info, negative_stats(four_segments.segments)
        )
        # 1 - 20 / 90 deduplicated over aligned reads
        assert metrics["percent_saturation"].iloc[0] == pytest.approx(100 * (1 - 20 / 90))

    def test_precomputed_percentages_used(self, make_segment_info):
        info = make_segment_info(["S1"], percent_trimmed=42.0)
        qc = SegmentQCFilter(SegmentQCThresholds())
        metrics = qc.compute_metrics(info, negative_stats(["S1"]))
        assert metrics["percent_trimmed"].iloc[0] == 42.0

    def test_high_ntc_is_strict(self, make_set, make_segment_info):
        segments = ["S1", "S2"]
        info = make_segment_info(segments, NTC=[9000.0, 9001.0])
        es = make_set(pd.DataFrame(50.0, index=["Neg1"], columns=segments),
                      code_classes=["Negative"], segment_info=info)
        result = SegmentQCFilter(SegmentQCThresholds()).flag_segments(es, negative_stats(segments))
        assert result.flags["HighNTC"].tolist() == [False, True]

    def test_low_negatives_uses_module_geomean(self, make_set):
        segments = ["S1", "S2"]
        es = make_set(pd.DataFrame(50.0, index=["Neg1"], columns=segments),
                      code_classes=["Negative"])
        stats = NegativeControlStats(
            geo_mean=pd.DataFrame({"M": [0.5, 3.0]}, index=segments),
            geo_sd=pd.DataFrame({"M": [1.2, 1.2]}, index=segments),
        )
        result = SegmentQCFilter(SegmentQCThresholds()).flag_segments(es, stats)
        assert result.flags["LowNegatives"].tolist() == [True, False]
        assert "NegGeoMean_M" in result.metrics.columns

    def test_missing_metric_counts_as_failure(self, make_set, make_segment_info):
        segments = ["S1", "S2"]
        info = make_segment_info(segments, nuclei=[np.nan, 200.0])
        es = make_set(pd.DataFrame(50.0, index=["Neg1"], columns=segments),
                      code_classes=["Negative"], segment_info=info)
        result = SegmentQCFilter(SegmentQCThresholds()).flag_segments(es, negative_stats(segments))
        assert result.flags["LowNuclei"].tolist() == [True, False]

    def test_missing_annotation_column(self, make_set, make_segment_info):
        info = make_segment_info(["S1"]).drop(columns=["area"])
        es = make_set(pd.DataFrame(50.0, index=["Neg1"], columns=["S1"]),
                      code_classes=["Negative"], segment_info=info)
        with pytest.raises(ConfigurationError) as exc_info:
            SegmentQCFilter(SegmentQCThresholds()).flag_segments(es, negative_stats(["S1"]))
        assert exc_info.value.field == "area"


class TestThresholdValidation:
    def test_missing_threshold(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SegmentQCFilter(SegmentQCThresholds(min_area=None))
        assert exc_info.value.field == "min_area"

    def test_non_numeric_threshold(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SegmentQCFilter(SegmentQCThresholds(percent_aligned="high"))
        assert exc_info.value.field == "percent_aligned"


class TestSummaryAndRemoval:
    def test_summary_total_row(self, four_segments):
        qc = SegmentQCFilter(SegmentQCThresholds(min_segment_reads=50))
        result = qc.flag_segments(four_segments, negative_stats(four_segments.segments))
        summary = qc.summarize(result)
        assert summary.loc["LowTrimmed"].tolist() == [3, 1]
        assert summary.loc["TOTAL FLAGS"].tolist() == [3, 1]

    def test_remove_flagged(self, four_segments):
        qc = SegmentQCFilter(SegmentQCThresholds(min_segment_reads=50))
        result = qc.flag_segments(four_segments, negative_stats(four_segments.segments))
        filtered = qc.remove_flagged(four_segments, result)
        assert filtered.segments == ["S1", "S3", "S4"]
        assert four_segments.segments == ["S1", "S2", "S3", "S4"]

    def test_all_removed_raises(self, four_segments):
        qc = SegmentQCFilter(SegmentQCThresholds(min_segment_reads=1e9))
        result = qc.flag_segments(four_segments, negative_stats(four_segments.segments))
        with pytest.raises(EmptyResultError):
            qc.remove_flagged(four_segments, result)
