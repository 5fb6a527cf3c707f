"""
Main application service orchestrating the GeoMx processing pipeline.
"""

from typing import Dict, Optional

from geomx_ir.domain.models import (
    DifferentialExpressionResult,
    ProcessingConfig,
    ProcessingResult,
)
from geomx_ir.domain.services.deconvolution import DeconvolutionEngine
from geomx_ir.domain.services.detection_filter import DetectionFilter
from geomx_ir.domain.services.differential_expression import DifferentialExpressionEngine
from geomx_ir.domain.services.gene_aggregator import GeneAggregator
from geomx_ir.domain.services.negative_controls import summarize_negative_controls
from geomx_ir.domain.services.normalizer import Normalizer
from geomx_ir.domain.services.probe_qc import ProbeQCFilter
from geomx_ir.domain.services.segment_qc import SegmentQCFilter
from geomx_ir.domain.services.solvers import MixedModelFitter, WeightedNNLSSolver
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.data.data_loader import GeoMxDataLoader
from geomx_ir.infrastructure.data.data_saver import GeoMxDataSaver
from geomx_ir.infrastructure.logger import Logger


class GeoMxProcessingService:
    """Main application service orchestrating the entire pipeline"""

    def __init__(
        self,
        config: ProcessingConfig,
        logger: Optional[Logger] = None,
        fitter: Optional[MixedModelFitter] = None,
        solver: Optional[WeightedNNLSSolver] = None,
    ):
        self.config = config
        self.logger = logger if logger is not None else Logger(config.log_file)

        # Initialize all services; thresholds are validated here, before any data is read
        self.data_loader = GeoMxDataLoader(self.logger)
        self.data_saver = GeoMxDataSaver(self.logger)
        self.statistical_analyzer = StatisticalAnalyzer(self.logger)
        self.segment_qc = SegmentQCFilter(config.segment_qc, self.logger)
        self.probe_qc = ProbeQCFilter(config.probe_qc, self.logger)
        self.gene_aggregator = GeneAggregator(self.logger)
        self.detection_filter = DetectionFilter(
            config.detection, self.logger, self.statistical_analyzer
        )
        self.normalizer = Normalizer(config.normalization, self.logger)
        self.de_engine = DifferentialExpressionEngine(fitter, self.logger)
        self.deconvolution = DeconvolutionEngine(config.deconvolution, solver, self.logger)

    def process(self) -> ProcessingResult:
        """
        Main processing pipeline.

        Returns:
            ProcessingResult: Complete processing results
        """
        self.logger.log_step("Processing pipeline", "Starting GeoMx data processing")

        # Step 1: Load and shift counts
        self.logger.log_step("Data loading", "Loading probe counts and segment annotation")
        raw = self.data_loader.load_expression_set(self.config)
        expression_set = raw.shift_counts_one(self.config.use_da_logic)

        # Step 2: Segment QC
        negative_stats = summarize_negative_controls(expression_set, self.logger)
        segment_qc = self.segment_qc.flag_segments(expression_set, negative_stats)
        expression_set = self.segment_qc.remove_flagged(expression_set, segment_qc)

        # Step 3: Probe QC
        probe_qc = self.probe_qc.flag_probes(expression_set)

        # Step 4: Aggregate probes to targets
        aggregation = self.gene_aggregator.aggregate(probe_qc.expression_set)

        # Step 5: LOQ and detection filtering
        detection = self.detection_filter.filter(
            aggregation.expression_set, aggregation.negative_stats
        )

        # Step 6: Normalization
        normalization = self.normalizer.normalize(
            detection.expression_set, aggregation.negative_stats
        )
        normalized = normalization.expression_set

        # Step 7: Differential expression, one run per design
        differential_expression: Dict[str, DifferentialExpressionResult] = {}
        for design in self.config.de_designs:
            differential_expression[design.name] = self.de_engine.run(normalized, design)

        result = ProcessingResult(
            segment_qc=segment_qc,
            probe_qc=probe_qc,
            aggregation=aggregation,
            detection=detection,
            normalization=normalization,
            differential_expression=differential_expression,
        )

        # Step 8: Deconvolution
        if self.config.signature_file:
            self._run_deconvolution(result)
        else:
            self.logger.log_step("Deconvolution", "No signature matrix given; skipped")

        # Step 9: Save results
        self.logger.log_step("Data saving", f"Writing results to {self.config.out_dir}")
        self.data_saver.save_results(result, self.config, self.build_summaries(result))

        self.logger.log_matrix_shape("Final normalized matrix", result.final_shape)
        self.logger.log_success("Processing pipeline completed")
        return result

    def _run_deconvolution(self, result: ProcessingResult) -> None:
        """Deconvolve, optionally collapse cell types, then reverse-deconvolve"""
        normalized = result.normalization.expression_set
        signature = self.data_loader.load_signature(self.config.signature_file)
        result.deconvolution = self.deconvolution.run(normalized, signature)

        beta = result.deconvolution.beta
        if self.config.cell_type_groups_file:
            groups = self.data_loader.load_cell_type_groups(self.config.cell_type_groups_file)
            result.collapsed_deconvolution = self.deconvolution.collapse_cell_types(
                result.deconvolution, groups
            )
            beta = result.collapsed_deconvolution.beta

        result.reverse_deconvolution = self.deconvolution.reverse_decon(normalized, beta)

    def build_summaries(self, result: ProcessingResult) -> Dict[str, object]:
        """QC and detection summary tables keyed by output file stem"""
        return {
            "segment_qc_summary": self.segment_qc.summarize(result.segment_qc),
            "probe_qc_summary": self.probe_qc.summarize(result.probe_qc.flags),
            "segment_detection_bins": self.detection_filter.segment_bin_summary(result.detection),
            "gene_detection_summary": self.detection_filter.gene_rate_summary(result.detection),
        }
