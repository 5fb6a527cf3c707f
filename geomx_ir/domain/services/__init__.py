"""
Business logic services package for the GeoMx processing pipeline.
"""

from .deconvolution import DeconvolutionEngine
from .detection_filter import DetectionFilter
from .differential_expression import DifferentialExpressionEngine
from .gene_aggregator import GeneAggregator
from .normalizer import Normalizer
from .probe_qc import ProbeQCFilter
from .segment_qc import SegmentQCFilter
from .solvers import MixedModelFitter, WeightedNNLSSolver
from .statistical_analyzer import StatisticalAnalyzer

__all__ = [
    "DeconvolutionEngine",
    "DetectionFilter",
    "DifferentialExpressionEngine",
    "GeneAggregator",
    "MixedModelFitter",
    "Normalizer",
    "ProbeQCFilter",
    "SegmentQCFilter",
    "StatisticalAnalyzer",
    "WeightedNNLSSolver",
]
