"""
Per-stratum linear mixed-model differential expression.
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import ConfigurationError, ModelFitError
from geomx_ir.domain.models import DEDesign, DifferentialExpressionResult, ExpressionSet
from geomx_ir.domain.services.normalizer import Normalizer
from geomx_ir.domain.services.solvers import MixedModelFitter
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.logger import Logger

RESULT_COLUMNS = [
    "Gene",
    "Stratum",
    "Contrast",
    "Estimate",
    "PValue",
    "FDR",
    "FitStatus",
    "Design",
]
FAILURE_COLUMNS = ["Gene", "Stratum", "Error"]


class DifferentialExpressionEngine:
    """Fits one mixed model per gene within each stratum and corrects per stratum"""

    def __init__(
        self,
        fitter: Optional[MixedModelFitter] = None,
        logger: Optional[Logger] = None,
    ):
        self.fitter = fitter if fitter is not None else MixedModelFitter()
        self.logger = logger if logger is not None else Logger()

    def _validate_design(self, expression_set: ExpressionSet, design: DEDesign) -> None:
        for field_name in ("test_variable", "stratum_variable", "group_variable"):
            column = getattr(design, field_name)
            if column is None:
                raise ConfigurationError(field_name)
            if column not in expression_set.segment_info.columns:
                raise ConfigurationError(
                    field_name, f"segment annotation has no column '{column}'"
                )

    def run(
        self,
        expression_set: ExpressionSet,
        design: DEDesign,
        genes: Optional[Sequence[str]] = None,
    ) -> DifferentialExpressionResult:
        """
        Run one design across all strata.

        Within each stratum every gene is fitted as
        ``log2(layer) ~ test + (1 | group)``; each non-reference level gives
        one contrast row. Benjamini-Hochberg correction runs over each
        stratum's rows separately. A gene whose fit fails gets NaN values
        and ``FitStatus == "failed"``; the other genes are unaffected.

        Args:
            expression_set: Normalized target-level expression set
            design: Comparison to run
            genes: Genes to test; defaults to all endogenous targets

        Returns:
            DifferentialExpressionResult: rows sorted by gene, stratum and
            contrast, plus the list of failed fits
        """
        self._validate_design(expression_set, design)
        log_expr = Normalizer.log2(expression_set.layer(design.layer))
        genes = list(expression_set.endogenous) if genes is None else list(genes)
        annotation = expression_set.segment_info

        self.logger.log_step(
            "Differential expression",
            f"{design.name}: {design.test_variable} within {design.stratum_variable}, "
            f"random effect {design.group_variable}, {len(genes)} genes, layer '{design.layer}'",
        )

        stratum_tables: List[pd.DataFrame] = []
        failures: List[dict] = []
        for stratum in sorted(annotation[design.stratum_variable].dropna().unique(), key=str):
            segments = annotation.index[annotation[design.stratum_variable] == stratum]
            levels = self._levels(annotation.loc[segments, design.test_variable], design, stratum)
            if levels is None:
                continue
            reference, test_levels = levels

            rows = []
            for gene in genes:
                data = pd.DataFrame(
                    {
                        "expr": log_expr.loc[gene, segments].to_numpy(dtype=float),
                        "test": annotation.loc[segments, design.test_variable].to_numpy(),
                        "group": annotation.loc[segments, design.group_variable].to_numpy(),
                    }
                )
                try:
                    estimates = self.fitter.fit(data, test_levels, random_slope=design.random_slope)
                except ModelFitError as e:
                    failures.append({"Gene": gene, "Stratum": stratum, "Error": str(e)})
                    for level in test_levels:
                        rows.append(self._row(gene, stratum, level, reference, np.nan, np.nan, "failed"))
                    continue
                for contrast in estimates:
                    rows.append(
                        self._row(
                            gene, stratum, contrast.level, reference,
                            contrast.estimate, contrast.p_value, "ok",
                        )
                    )

            table = pd.DataFrame(rows, columns=RESULT_COLUMNS[:5] + ["FitStatus"])
            table["FDR"] = StatisticalAnalyzer.fdr_bh(table["PValue"].to_numpy())
            stratum_tables.append(table)

            n_failed = int((table["FitStatus"] == "failed").sum())
            self.logger.log_step(
                "Differential expression",
                f"Stratum '{stratum}': {len(table)} rows, {n_failed} failed fits",
            )

        if stratum_tables:
            result = pd.concat(stratum_tables, ignore_index=True)
        else:
            self.logger.log_warning(f"Design '{design.name}' produced no testable strata")
            result = pd.DataFrame(columns=RESULT_COLUMNS)
        result["Design"] = design.name
        result = (
            result[RESULT_COLUMNS]
            .sort_values(["Gene", "Stratum", "Contrast"], key=lambda col: col.astype(str))
            .reset_index(drop=True)
        )

        if failures:
            self.logger.log_warning(f"{len(failures)} model fits failed in design '{design.name}'")
        return DifferentialExpressionResult(
            table=result, failures=pd.DataFrame(failures, columns=FAILURE_COLUMNS)
        )

    def _levels(self, test_values: pd.Series, design: DEDesign, stratum):
        levels = sorted(test_values.dropna().unique(), key=str)
        if len(levels) < 2:
            self.logger.log_warning(
                f"Stratum '{stratum}' has fewer than two levels of "
                f"'{design.test_variable}'; skipped"
            )
            return None

        reference = design.reference_level if design.reference_level is not None else levels[0]
        if reference not in levels:
            self.logger.log_warning(
                f"Reference level '{reference}' absent from stratum '{stratum}'; skipped"
            )
            return None
        return reference, [level for level in levels if level != reference]

    @staticmethod
    def _row(gene, stratum, level, reference, estimate, p_value, status) -> dict:
        return {
            "Gene": gene,
            "Stratum": stratum,
            "Contrast": f"{level} - {reference}",
            "Estimate": estimate,
            "PValue": p_value,
            "FitStatus": status,
        }
