"""
Limit-of-quantification thresholds and detection-rate filtering.
"""

from typing import Optional

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import (
    ConfigurationError,
    DataValidationError,
    EmptyResultError,
    InvariantViolationError,
)
from geomx_ir.domain.models import (
    NEGATIVE,
    TARGET_LEVEL,
    DetectionResult,
    DetectionThresholds,
    ExpressionSet,
    NegativeControlStats,
)
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.logger import Logger

SEGMENT_DETECTION_BINS = [0.0, 0.01, 0.05, 0.10, 0.15, np.inf]
SEGMENT_DETECTION_LABELS = ["<1%", "1-5%", "5-10%", "10-15%", ">15%"]
GENE_DETECTION_CUTOFFS = [0.01, 0.05, 0.10, 0.20, 0.30, 0.50]


class DetectionFilter:
    """Computes LOQ and filters segments and genes by detection rate"""

    def __init__(
        self,
        thresholds: DetectionThresholds,
        logger: Optional[Logger] = None,
        statistical_analyzer: Optional[StatisticalAnalyzer] = None,
    ):
        self.thresholds = thresholds
        self.logger = logger if logger is not None else Logger()
        self.statistical_analyzer = statistical_analyzer or StatisticalAnalyzer(self.logger)
        for field_name in (
            "cutoff_sd",
            "min_loq",
            "segment_detection_rate",
            "gene_detection_rate",
        ):
            if getattr(thresholds, field_name, None) is None:
                raise ConfigurationError(field_name)

    def compute_loq(self, negative_stats: NegativeControlStats) -> pd.DataFrame:
        """
        LOQ = max(min_loq, NegGeoMean * NegGeoSD ** cutoff_sd) per segment and module.

        Args:
            negative_stats: Negative-control statistics

        Returns:
            pd.DataFrame: segments x modules

        Raises:
            InvariantViolationError: if any LOQ is zero, negative or not finite
        """
        raw_loq = negative_stats.geo_mean * negative_stats.geo_sd ** self.thresholds.cutoff_sd
        loq = np.maximum(raw_loq, self.thresholds.min_loq)
        # np.maximum propagates NaN, so a missing SD is caught below
        bad = ~np.isfinite(loq.to_numpy()) | (loq.to_numpy() <= 0)
        if bad.any():
            rows, cols = np.nonzero(bad)
            pairs = [(loq.index[r], loq.columns[c]) for r, c in zip(rows, cols)][:10]
            raise InvariantViolationError(f"Invalid LOQ for (segment, module): {pairs}")

        for module in loq.columns:
            self.logger.log_threshold(f"Median LOQ ({module})", float(loq[module].median()))
        return loq

    def detection_matrix(self, expression_set: ExpressionSet, loq: pd.DataFrame) -> pd.DataFrame:
        """
        Boolean targets x segments matrix: count strictly above the module LOQ.

        Args:
            expression_set: Target-level expression set
            loq: segments x modules LOQ table

        Returns:
            pd.DataFrame: True where the target is detected
        """
        modules = expression_set.feature_info["Module"]
        missing = sorted(set(modules) - set(loq.columns))
        if missing:
            raise DataValidationError(f"No negative controls (LOQ) for modules: {missing}")

        segments = expression_set.counts.columns
        loq_per_feature = loq.loc[segments, modules.to_numpy()].T
        loq_per_feature.index = expression_set.counts.index
        return expression_set.counts > loq_per_feature

    def filter(
        self, expression_set: ExpressionSet, negative_stats: NegativeControlStats
    ) -> DetectionResult:
        """
        Drop low-detection segments, then low-detection genes.

        Segments are filtered first; gene detection rates are then computed on
        the retained segments only. Negative-control targets and whitelisted
        genes are always kept.

        Args:
            expression_set: Target-level expression set
            negative_stats: Negative-control statistics for the same segments

        Returns:
            DetectionResult: LOQ, detection matrix, per-segment and per-gene
            statistics and the filtered set
        """
        if expression_set.feature_level != TARGET_LEVEL:
            raise DataValidationError("Detection filtering needs target-level counts")

        self.logger.log_step(
            "LOQ", f"cutoff_sd={self.thresholds.cutoff_sd}, min_loq={self.thresholds.min_loq}"
        )
        loq = self.compute_loq(negative_stats.subset(expression_set.segments))
        detected = self.detection_matrix(expression_set, loq)

        endogenous = expression_set.endogenous
        if len(endogenous) == 0:
            raise EmptyResultError("Detection filtering", "endogenous gene")

        # Segment filtering
        genes_detected = detected.loc[endogenous].sum(axis=0)
        segment_stats = pd.DataFrame(
            {
                "GenesDetected": genes_detected.astype(int),
                "GeneDetectionRate": genes_detected / len(endogenous),
            }
        )
        segment_stats["DetectionBin"] = pd.cut(
            segment_stats["GeneDetectionRate"],
            bins=SEGMENT_DETECTION_BINS,
            labels=SEGMENT_DETECTION_LABELS,
            right=False,
        )
        segment_stats["Retained"] = (
            segment_stats["GeneDetectionRate"] >= self.thresholds.segment_detection_rate
        )
        kept_segments = list(segment_stats.index[segment_stats["Retained"]])
        if not kept_segments:
            raise EmptyResultError("Segment detection filter", "segment")
        self.logger.log_threshold(
            "Segment detection rate", self.thresholds.segment_detection_rate
        )
        self.logger.log_filter(
            "Segment detection filter", len(kept_segments), len(segment_stats), "segment"
        )

        # Gene filtering on the reduced segment set
        detected_kept = detected[kept_segments]
        detected_segments = detected_kept.sum(axis=1)
        is_negative = expression_set.feature_info["CodeClass"] == NEGATIVE
        whitelisted = detected_kept.index.isin(list(self.thresholds.whitelist))
        gene_stats = pd.DataFrame(
            {
                "CodeClass": expression_set.feature_info["CodeClass"],
                "DetectedSegments": detected_segments.astype(int),
                "DetectionRate": detected_segments / len(kept_segments),
            }
        )
        passes_rate = gene_stats["DetectionRate"] >= self.thresholds.gene_detection_rate
        gene_stats["Retained"] = passes_rate | is_negative | whitelisted
        gene_stats["RetainedBy"] = np.select(
            [passes_rate, is_negative, whitelisted],
            ["detection", "negative_control", "whitelist"],
            default="",
        )

        kept_genes = gene_stats.index[gene_stats["Retained"]]
        if not (gene_stats.loc[kept_genes, "CodeClass"] != NEGATIVE).any():
            raise EmptyResultError("Gene detection filter", "endogenous gene")
        self.logger.log_threshold("Gene detection rate", self.thresholds.gene_detection_rate)
        self.logger.log_filter("Gene detection filter", len(kept_genes), len(gene_stats), "target")

        filtered = expression_set.subset(features=kept_genes, segments=kept_segments)
        self.logger.log_matrix_shape("After detection filtering", filtered.shape)
        return DetectionResult(
            loq=loq,
            detected=detected,
            segment_stats=segment_stats,
            gene_stats=gene_stats,
            expression_set=filtered,
        )

    def segment_bin_summary(self, result: DetectionResult) -> pd.DataFrame:
        """Number of segments per gene-detection-rate bin"""
        counts = result.segment_stats["DetectionBin"].astype(str).value_counts()
        return counts.reindex(SEGMENT_DETECTION_LABELS, fill_value=0).rename_axis(
            "DetectionBin"
        ).reset_index(name="Segments")

    def gene_rate_summary(self, result: DetectionResult) -> pd.DataFrame:
        """Endogenous genes detected in at least 1/5/10/20/30/50 % of retained segments"""
        endogenous = result.gene_stats[result.gene_stats["CodeClass"] != NEGATIVE]
        return self.statistical_analyzer.summarize_rates(
            endogenous["DetectionRate"], GENE_DETECTION_CUTOFFS
        )
