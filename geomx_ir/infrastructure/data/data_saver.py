"""
Data saving functionality for the GeoMx processing pipeline.
"""

import json
import os
from typing import Any, Dict

import pandas as pd

from geomx_ir.domain.models import ProcessingConfig, ProcessingResult
from geomx_ir.infrastructure.logger import Logger


class GeoMxDataSaver:
    """Responsible for saving processed data and results"""

    def __init__(self, logger: Logger = None):
        self.logger = logger if logger is not None else Logger()

    def save_table(self, table: pd.DataFrame, file_path: str, index: bool = True) -> None:
        """
        Save a table to CSV.

        Args:
            table: Table to save
            file_path: Output file path
            index: Write the row index as the first column
        """
        try:
            # Ensure directory exists
            os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
            table.to_csv(file_path, index=index)
            self.logger.log_save(file_path)

        except Exception as e:
            self.logger.log_error(e, f"Saving table to {file_path}")
            raise

    def save_results(
        self,
        results: ProcessingResult,
        config: ProcessingConfig,
        summaries: Dict[str, pd.DataFrame],
    ) -> None:
        """
        Save all processing results to ``config.out_dir``.

        Args:
            results: Processing results
            config: Processing configuration
            summaries: QC summary tables keyed by output stem
        """
        out = config.out_dir
        try:
            # QC flags
            qc = results.segment_qc
            segment_flags = qc.metrics.join(qc.flags).join(qc.status)
            self.save_table(segment_flags, os.path.join(out, "segment_qc_flags.csv"))
            self.save_table(results.probe_qc.flags, os.path.join(out, "probe_qc_flags.csv"))
            for stem, table in summaries.items():
                self.save_table(table, os.path.join(out, f"{stem}.csv"))

            # Detection
            detection = results.detection
            self.save_table(detection.loq, os.path.join(out, "loq.csv"))
            self.save_table(detection.segment_stats, os.path.join(out, "segment_detection.csv"))
            self.save_table(detection.gene_stats, os.path.join(out, "gene_detection.csv"))

            # Normalization
            normalized = results.normalization.expression_set
            self.save_table(
                results.normalization.factors, os.path.join(out, "normalization_factors.csv")
            )
            for name, layer in normalized.layers.items():
                self.save_table(layer, os.path.join(out, f"{name}_matrix.csv"))

            self._save_differential_expression(results, out)
            self._save_deconvolution(results, out)
            self.save_run_summary(results, config)

            self.logger.log_success("All results saved successfully")

        except Exception as e:
            self.logger.log_error(e, "Saving results")
            raise

    def _save_differential_expression(self, results: ProcessingResult, out: str) -> None:
        """Save all designs into one long table"""
        tables = [result.table for result in results.differential_expression.values()]
        if not tables:
            return
        combined = pd.concat(tables, ignore_index=True)
        self.save_table(combined, os.path.join(out, "de_results.csv"), index=False)

        failures = [
            result.failures.assign(Design=name)
            for name, result in results.differential_expression.items()
            if result.n_failed
        ]
        if failures:
            self.save_table(
                pd.concat(failures, ignore_index=True),
                os.path.join(out, "de_failures.csv"),
                index=False,
            )

    def _save_deconvolution(self, results: ProcessingResult, out: str) -> None:
        """Save abundance, proportions and reverse deconvolution tables"""
        if results.deconvolution is not None:
            self.save_table(results.deconvolution.beta, os.path.join(out, "deconvolution_beta.csv"))
            self.save_table(
                results.deconvolution.prop_of_all,
                os.path.join(out, "deconvolution_proportions.csv"),
            )
        if results.collapsed_deconvolution is not None:
            self.save_table(
                results.collapsed_deconvolution.beta,
                os.path.join(out, "deconvolution_collapsed_beta.csv"),
            )
        if results.reverse_deconvolution is not None:
            reverse = results.reverse_deconvolution
            self.save_table(reverse.coefs, os.path.join(out, "reverse_decon_coefs.csv"))
            fit = pd.concat([reverse.cors, reverse.resid_sd], axis=1)
            self.save_table(fit, os.path.join(out, "reverse_decon_fit.csv"))

    def build_run_summary(self, results: ProcessingResult, config: ProcessingConfig) -> Dict[str, Any]:
        """Counts at each stage plus the inputs used"""
        de_summary = {
            name: {
                "rows": int(len(result.table)),
                "failed_fits": int(result.n_failed),
                "significant_fdr_0.05": int((result.table["FDR"] < 0.05).sum()),
            }
            for name, result in results.differential_expression.items()
        }
        summary = {
            "inputs": {
                "probe_counts": config.probe_counts_file,
                "annotation": config.annotation_file,
                "signature": config.signature_file,
            },
            "segments": {
                "loaded": int(len(results.segment_qc.status)),
                "after_segment_qc": int(len(results.segment_qc.passed)),
                "after_detection": int(results.detection.expression_set.shape[1]),
            },
            "features": {
                "probes_flagged": int(len(results.probe_qc.flags)),
                "probes_removed": int(results.probe_qc.flags["Remove"].sum()),
                "targets_aggregated": int(results.aggregation.expression_set.shape[0]),
                "targets_after_detection": int(results.detection.expression_set.shape[0]),
            },
            "final_shape": list(results.final_shape),
            "differential_expression": de_summary,
        }
        if results.deconvolution is not None:
            summary["deconvolution"] = {
                "cell_types": int(results.deconvolution.beta.shape[0]),
                "failed_segments": list(results.deconvolution.failed_segments),
            }
        return summary

    def save_run_summary(self, results: ProcessingResult, config: ProcessingConfig) -> None:
        """Save the run summary as JSON"""
        file_path = os.path.join(config.out_dir, "run_summary.json")
        try:
            with open(file_path, "w") as f:
                json.dump(self.build_run_summary(results, config), f, indent=2)
            self.logger.log_save(file_path)
        except Exception as e:
            self.logger.log_error(e, f"Saving run summary to {file_path}")
            raise
