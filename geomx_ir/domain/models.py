"""
Core domain models for the GeoMx processing pipeline.
Contains the expression snapshot, configuration structures and stage results.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from geomx_ir.domain.exceptions import DataValidationError

ENDOGENOUS = "Endogenous"
NEGATIVE = "Negative"

PROBE_LEVEL = "probe"
TARGET_LEVEL = "target"

SEGMENT_COLUMNS = (
    "slide",
    "region",
    "class",
    "Raw",
    "Trimmed",
    "Stitched",
    "Aligned",
    "DeduplicatedReads",
    "NTC",
    "nuclei",
    "area",
)


@dataclass(frozen=True)
class ExpressionSet:
    """Immutable features x segments snapshot passed between pipeline stages.

    ``counts`` keeps the raw (shifted) counts, ``layers`` holds derived
    matrices such as normalized expression. Every transformation returns a
    new instance; nothing is modified in place.
    """

    counts: pd.DataFrame
    feature_info: pd.DataFrame
    segment_info: pd.DataFrame
    layers: Dict[str, pd.DataFrame] = field(default_factory=dict)
    feature_level: str = PROBE_LEVEL

    def __post_init__(self):
        if self.counts.index.has_duplicates:
            raise DataValidationError("Feature identifiers must be unique")
        if self.counts.columns.has_duplicates:
            raise DataValidationError("Segment identifiers must be unique")
        if not self.counts.index.equals(self.feature_info.index):
            raise DataValidationError("feature_info index does not match count rows")
        if not self.counts.columns.equals(self.segment_info.index):
            raise DataValidationError("segment_info index does not match count columns")

        required = ["Module", "CodeClass"]
        if self.feature_level == PROBE_LEVEL:
            required.append("TargetName")
        missing = [col for col in required if col not in self.feature_info.columns]
        if missing:
            raise DataValidationError(f"feature_info is missing columns: {missing}")

        for name, layer in self.layers.items():
            if not (
                layer.index.equals(self.counts.index)
                and layer.columns.equals(self.counts.columns)
            ):
                raise DataValidationError(f"Layer '{name}' is not aligned with counts")

    @property
    def segments(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def features(self) -> List[str]:
        return list(self.counts.index)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.counts.shape

    @property
    def endogenous(self) -> pd.Index:
        return self.feature_info.index[self.feature_info["CodeClass"] == ENDOGENOUS]

    @property
    def negatives(self) -> pd.Index:
        return self.feature_info.index[self.feature_info["CodeClass"] == NEGATIVE]

    @property
    def modules(self) -> List[str]:
        return list(pd.unique(self.feature_info["Module"]))

    def layer(self, name: str) -> pd.DataFrame:
        """Return a data layer by name; ``exprs`` is the raw count matrix."""
        if name == "exprs":
            return self.counts
        if name not in self.layers:
            raise DataValidationError(
                f"Layer '{name}' not found (available: {['exprs', *self.layers]})"
            )
        return self.layers[name]

    def subset(
        self,
        features: Optional[Sequence[str]] = None,
        segments: Optional[Sequence[str]] = None,
    ) -> "ExpressionSet":
        """Return a copy restricted to the given features and segments, original order kept."""
        rows = self.counts.index
        cols = self.counts.columns
        if features is not None:
            rows = rows[rows.isin(list(features))]
        if segments is not None:
            cols = cols[cols.isin(list(segments))]

        return replace(
            self,
            counts=self.counts.loc[rows, cols].copy(),
            feature_info=self.feature_info.loc[rows].copy(),
            segment_info=self.segment_info.loc[cols].copy(),
            layers={
                name: layer.loc[rows, cols].copy() for name, layer in self.layers.items()
            },
        )

    def with_layer(self, name: str, values: pd.DataFrame) -> "ExpressionSet":
        layers = dict(self.layers)
        layers[name] = values.copy()
        return replace(self, layers=layers)

    def shift_counts_one(self, use_da_logic: bool = True) -> "ExpressionSet":
        """Make counts strictly positive for log-domain statistics.

        With ``use_da_logic`` only zero counts are raised to one; otherwise one
        is added to every count.
        """
        counts = self.counts.astype(float)
        if use_da_logic:
            shifted = counts.mask(counts == 0, 1.0)
        else:
            shifted = counts + 1.0
        return replace(self, counts=shifted)


@dataclass(frozen=True)
class AnnotationColumns:
    """Maps canonical segment attributes onto annotation file column names"""

    segment_id: str = "SampleID"
    slide: str = "slide name"
    region: str = "region"
    disease_class: str = "class"
    raw_reads: str = "Raw"
    trimmed_reads: str = "Trimmed"
    stitched_reads: str = "Stitched"
    aligned_reads: str = "Aligned"
    deduplicated_reads: str = "DeduplicatedReads"
    ntc: str = "NTC"
    nuclei: str = "nuclei"
    area: str = "area"

    def canonical_mapping(self) -> Dict[str, str]:
        """Source column -> canonical column (segment id excluded)"""
        return {
            self.slide: "slide",
            self.region: "region",
            self.disease_class: "class",
            self.raw_reads: "Raw",
            self.trimmed_reads: "Trimmed",
            self.stitched_reads: "Stitched",
            self.aligned_reads: "Aligned",
            self.deduplicated_reads: "DeduplicatedReads",
            self.ntc: "NTC",
            self.nuclei: "nuclei",
            self.area: "area",
        }


@dataclass(frozen=True)
class SegmentQCThresholds:
    """Segment-level sequencing and tissue cutoffs"""

    min_segment_reads: float = 1000
    percent_trimmed: float = 80
    percent_stitched: float = 80
    percent_aligned: float = 75
    percent_saturation: float = 50
    min_negative_count: float = 1
    max_ntc_count: float = 9000
    min_nuclei: float = 20
    min_area: float = 1000


@dataclass(frozen=True)
class ProbeQCThresholds:
    """Probe-level outlier cutoffs"""

    min_probe_ratio: float = 0.1
    percent_fail_grubbs: float = 20
    outlier_alpha: float = 0.01
    remove_local_outliers: bool = True


@dataclass(frozen=True)
class DetectionThresholds:
    """LOQ construction and detection-rate filtering"""

    cutoff_sd: float = 2
    min_loq: float = 2
    segment_detection_rate: float = 0.10
    gene_detection_rate: float = 0.10
    whitelist: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NormalizationConfig:
    quantile: float = 0.75
    methods: Tuple[str, ...] = ("q_norm", "neg_norm")


@dataclass(frozen=True)
class DEDesign:
    """One mixed-model comparison, fitted separately within each stratum.

    The default compares disease classes within each zone with a random
    intercept per slide. Setting ``random_slope`` gives the within-slide
    layout ``(1 + test | slide)`` used for zone comparisons.
    """

    name: str = "class_within_region"
    test_variable: str = "class"
    stratum_variable: str = "region"
    group_variable: str = "slide"
    reference_level: Optional[str] = None
    random_slope: bool = False
    layer: str = "q_norm"


@dataclass(frozen=True)
class DeconvolutionConfig:
    layer: str = "q_norm"
    min_overlap: int = 10
    epsilon: Optional[float] = None


@dataclass
class ProcessingConfig:
    """Configuration for the GeoMx processing pipeline"""

    out_dir: str
    probe_counts_file: str
    annotation_file: str
    signature_file: Optional[str] = None
    cell_type_groups_file: Optional[str] = None
    log_file: Optional[str] = None
    use_da_logic: bool = True
    annotation_columns: AnnotationColumns = field(default_factory=AnnotationColumns)
    segment_qc: SegmentQCThresholds = field(default_factory=SegmentQCThresholds)
    probe_qc: ProbeQCThresholds = field(default_factory=ProbeQCThresholds)
    detection: DetectionThresholds = field(default_factory=DetectionThresholds)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    de_designs: List[DEDesign] = field(default_factory=lambda: [DEDesign()])
    deconvolution: DeconvolutionConfig = field(default_factory=DeconvolutionConfig)


@dataclass(frozen=True)
class NegativeControlStats:
    """Per segment x module geometric mean and geometric SD of negative probes"""

    geo_mean: pd.DataFrame
    geo_sd: pd.DataFrame

    def subset(self, segments: Sequence[str]) -> "NegativeControlStats":
        return NegativeControlStats(
            geo_mean=self.geo_mean.loc[list(segments)].copy(),
            geo_sd=self.geo_sd.loc[list(segments)].copy(),
        )


@dataclass
class SegmentQCResult:
    metrics: pd.DataFrame
    flags: pd.DataFrame
    status: pd.Series

    @property
    def passed(self) -> List[str]:
        return list(self.status.index[self.status == "PASS"])


@dataclass
class ProbeQCResult:
    flags: pd.DataFrame
    local_outliers: pd.DataFrame
    expression_set: ExpressionSet


@dataclass
class AggregationResult:
    expression_set: ExpressionSet
    negative_stats: NegativeControlStats


@dataclass
class DetectionResult:
    loq: pd.DataFrame
    detected: pd.DataFrame
    segment_stats: pd.DataFrame
    gene_stats: pd.DataFrame
    expression_set: ExpressionSet


@dataclass
class NormalizationResult:
    factors: pd.DataFrame
    expression_set: ExpressionSet


@dataclass
class DifferentialExpressionResult:
    table: pd.DataFrame
    failures: pd.DataFrame

    @property
    def n_failed(self) -> int:
        return len(self.failures)


@dataclass
class DeconvolutionResult:
    beta: pd.DataFrame
    prop_of_all: pd.DataFrame
    yhat: Optional[pd.DataFrame] = None
    resids: Optional[pd.DataFrame] = None
    failed_segments: List[str] = field(default_factory=list)

    @property
    def total_abundance(self) -> pd.Series:
        return self.beta.sum(axis=0)


@dataclass
class ReverseDeconResult:
    coefs: pd.DataFrame
    yhat: pd.DataFrame
    resids: pd.DataFrame
    cors: pd.Series
    resid_sd: pd.Series


@dataclass
class ProcessingResult:
    """Result of a full GeoMx processing run"""

    segment_qc: SegmentQCResult
    probe_qc: ProbeQCResult
    aggregation: AggregationResult
    detection: DetectionResult
    normalization: NormalizationResult
    differential_expression: Dict[str, DifferentialExpressionResult]
    deconvolution: Optional[DeconvolutionResult] = None
    collapsed_deconvolution: Optional[DeconvolutionResult] = None
    reverse_deconvolution: Optional[ReverseDeconResult] = None

    @property
    def final_shape(self) -> Tuple[int, int]:
        return self.normalization.expression_set.shape
