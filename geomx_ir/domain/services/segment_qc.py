"""
Segment-level quality control: sequencing, background and tissue-size flags.
"""

from typing import Optional

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import ConfigurationError, EmptyResultError
from geomx_ir.domain.models import (
    ExpressionSet,
    NegativeControlStats,
    SegmentQCResult,
    SegmentQCThresholds,
)
from geomx_ir.infrastructure.logger import Logger

PASS = "PASS"
WARNING = "WARNING"

# flag name -> (metric column, threshold field, fails when metric is below the threshold)
FLAG_RULES = {
    "LowReads": ("Raw", "min_segment_reads", True),
    "LowTrimmed": ("percent_trimmed", "percent_trimmed", True),
    "LowStitched": ("percent_stitched", "percent_stitched", True),
    "LowAligned": ("percent_aligned", "percent_aligned", True),
    "LowSaturation": ("percent_saturation", "percent_saturation", True),
    "LowNegatives": ("min_neg_geo_mean", "min_negative_count", True),
    "HighNTC": ("NTC", "max_ntc_count", False),
    "LowNuclei": ("nuclei", "min_nuclei", True),
    "LowArea": ("area", "min_area", True),
}


class SegmentQCFilter:
    """Flags and removes segments failing sequencing or tissue cutoffs"""

    def __init__(self, thresholds: SegmentQCThresholds, logger: Optional[Logger] = None):
        self.thresholds = thresholds
        self.logger = logger if logger is not None else Logger()
        self._validate_thresholds()

    def _validate_thresholds(self) -> None:
        for _, field_name, _ in FLAG_RULES.values():
            value = getattr(self.thresholds, field_name, None)
            if value is None:
                raise ConfigurationError(field_name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or np.isnan(value):
                raise ConfigurationError(field_name, f"expected a number, got {value!r}")

    def compute_metrics(
        self, segment_info: pd.DataFrame, negative_stats: NegativeControlStats
    ) -> pd.DataFrame:
        """
        Derive the QC metric table from annotation read counts.

        Percentages already present in the annotation are used as-is;
        otherwise they are derived from the raw read counts.

        Args:
            segment_info: Canonical segment annotation
            negative_stats: Negative-control geometric means per module

        Returns:
            pd.DataFrame: One row per segment, one column per metric
        """
        metrics = pd.DataFrame(index=segment_info.index)
        metrics["Raw"] = self._column(segment_info, "Raw")

        derived = {
            "percent_trimmed": ("Trimmed", "Raw"),
            "percent_stitched": ("Stitched", "Raw"),
            "percent_aligned": ("Aligned", "Raw"),
        }
        for metric, (numerator, denominator) in derived.items():
            if metric in segment_info.columns:
                metrics[metric] = segment_info[metric].astype(float)
            else:
                with np.errstate(divide="ignore", invalid="ignore"):
                    metrics[metric] = (
                        100
                        * self._column(segment_info, numerator)
                        / self._column(segment_info, denominator)
                    )

        if "percent_saturation" in segment_info.columns:
            metrics["percent_saturation"] = segment_info["percent_saturation"].astype(float)
        else:
            with np.errstate(divide="ignore", invalid="ignore"):
                metrics["percent_saturation"] = 100 * (
                    1
                    - self._column(segment_info, "DeduplicatedReads")
                    / self._column(segment_info, "Aligned")
                )

        geo_means = negative_stats.geo_mean.reindex(segment_info.index)
        for module in geo_means.columns:
            metrics[f"NegGeoMean_{module}"] = geo_means[module]
        metrics["min_neg_geo_mean"] = geo_means.min(axis=1)

        for column in ("NTC", "nuclei", "area"):
            metrics[column] = self._column(segment_info, column)

        return metrics

    @staticmethod
    def _column(segment_info: pd.DataFrame, column: str) -> pd.Series:
        if column not in segment_info.columns:
            raise ConfigurationError(column, "annotation column required for segment QC is missing")
        return pd.to_numeric(segment_info[column], errors="coerce").astype(float)

    def flag_segments(
        self, expression_set: ExpressionSet, negative_stats: NegativeControlStats
    ) -> SegmentQCResult:
        """
        Compute one boolean flag per criterion for every segment.

        A flag is True when the segment fails that cutoff. Status is PASS when
        no flag is set, WARNING otherwise. No segment is removed here.

        Args:
            expression_set: Probe-level expression set
            negative_stats: Negative-control statistics for the same segments

        Returns:
            SegmentQCResult: metrics, flags and status per segment
        """
        self.logger.log_step("Segment QC", f"Flagging {len(expression_set.segments)} segments")
        metrics = self.compute_metrics(expression_set.segment_info, negative_stats)

        flags = pd.DataFrame(index=metrics.index)
        for flag_name, (metric, field_name, fails_below) in FLAG_RULES.items():
            cutoff = float(getattr(self.thresholds, field_name))
            values = metrics[metric]
            if fails_below:
                flags[flag_name] = (values < cutoff).to_numpy()
            else:
                flags[flag_name] = (values > cutoff).to_numpy()
            # A metric that cannot be computed counts as a failure
            flags.loc[values.isna(), flag_name] = True
            self.logger.log_threshold(f"{flag_name} cutoff ({field_name})", cutoff)

        flags = flags.astype(bool)
        status = pd.Series(
            np.where(flags.any(axis=1), WARNING, PASS), index=flags.index, name="QCStatus"
        )

        n_pass = int((status == PASS).sum())
        self.logger.log_counts("Segment QC status", {PASS: n_pass, WARNING: len(status) - n_pass})
        return SegmentQCResult(metrics=metrics, flags=flags, status=status)

    def summarize(self, result: SegmentQCResult) -> pd.DataFrame:
        """
        Pass/Warning counts per flag with a TOTAL FLAGS row.

        Args:
            result: Output of ``flag_segments``

        Returns:
            pd.DataFrame: Indexed by flag name with Pass and Warning columns
        """
        warnings = result.flags.sum(axis=0).astype(int)
        summary = pd.DataFrame(
            {"Pass": len(result.flags) - warnings, "Warning": warnings}
        )
        n_warning = int((result.status == WARNING).sum())
        summary.loc["TOTAL FLAGS"] = [len(result.status) - n_warning, n_warning]
        return summary

    def remove_flagged(
        self, expression_set: ExpressionSet, result: SegmentQCResult
    ) -> ExpressionSet:
        """Keep only PASS segments"""
        passed = result.passed
        if not passed:
            raise EmptyResultError("Segment QC", "segment")

        filtered = expression_set.subset(segments=passed)
        self.logger.log_filter("Segment QC", len(passed), len(result.status), "segment")
        self.logger.log_matrix_shape("After segment QC", filtered.shape)
        return filtered
