"""
Cell-type deconvolution of normalized expression against a reference signature.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import DataValidationError, SolverError
from geomx_ir.domain.models import (
    NEGATIVE,
    DeconvolutionConfig,
    DeconvolutionResult,
    ExpressionSet,
    ReverseDeconResult,
)
from geomx_ir.domain.services.solvers import WeightedNNLSSolver
from geomx_ir.infrastructure.logger import Logger

# Technical noise floor of the log2-scale error model
ERROR_MODEL_FLOOR_SD = 0.1


class DeconvolutionEngine:
    """Estimates cell-type abundance per segment and maps it back to genes"""

    def __init__(
        self,
        config: DeconvolutionConfig,
        solver: Optional[WeightedNNLSSolver] = None,
        logger: Optional[Logger] = None,
    ):
        self.config = config
        self.solver = solver if solver is not None else WeightedNNLSSolver()
        self.logger = logger if logger is not None else Logger()

    def derive_background(self, expression_set: ExpressionSet, layer: str) -> pd.DataFrame:
        """
        Expected background for every data point.

        For each probe module the mean of its negative-control targets in the
        chosen layer is assigned to every gene of that module.

        Args:
            expression_set: Normalized target-level expression set
            layer: Layer name to read

        Returns:
            pd.DataFrame: features x segments background
        """
        values = expression_set.layer(layer)
        info = expression_set.feature_info
        background = pd.DataFrame(np.nan, index=values.index, columns=values.columns)

        for module, features in info.groupby("Module", sort=False).groups.items():
            negatives = info.index[(info["Module"] == module) & (info["CodeClass"] == NEGATIVE)]
            if len(negatives) == 0:
                raise DataValidationError(f"No negative-control target for module '{module}'")
            module_bg = values.loc[negatives].mean(axis=0)
            background.loc[features] = np.tile(module_bg.to_numpy(), (len(features), 1))
        return background

    @staticmethod
    def derive_weights(raw_counts: pd.DataFrame) -> pd.DataFrame:
        """
        Inverse-variance weights from a log2-scale error model.

        The SD of log2 expression combines Poisson counting noise, which
        dominates at low counts, with a fixed technical floor.

        Args:
            raw_counts: Raw counts aligned with the expression being fitted

        Returns:
            pd.DataFrame: weights, same shape as ``raw_counts``
        """
        counting_var = (1 / np.log(2)) ** 2 / (raw_counts.clip(lower=0) + 1)
        sd = np.sqrt(counting_var + ERROR_MODEL_FLOOR_SD**2)
        return 1 / sd**2

    def _epsilon(self, values: pd.DataFrame) -> float:
        if self.config.epsilon is not None:
            return float(self.config.epsilon)
        positive = values.to_numpy()[values.to_numpy() > 0]
        return float(positive.min()) if positive.size else 1.0

    def _log2_resids(self, observed: pd.DataFrame, fitted: pd.DataFrame, epsilon: float) -> pd.DataFrame:
        return np.log2(observed.clip(lower=epsilon)) - np.log2(fitted.clip(lower=epsilon))

    def run(self, expression_set: ExpressionSet, signature: pd.DataFrame) -> DeconvolutionResult:
        """
        Solve ``expression ~ signature @ beta + background`` with ``beta >= 0``.

        Genes are matched by identifier between the endogenous targets and the
        signature rows. Each segment is solved independently by weighted NNLS;
        a failed segment gets NaN abundances and the rest continue.

        Args:
            expression_set: Normalized target-level expression set
            signature: genes x cell types reference profiles

        Returns:
            DeconvolutionResult: abundance (cell types x segments),
            proportions, fitted values and log2 residuals
        """
        layer = self.config.layer
        norm = expression_set.layer(layer)
        genes = [gene for gene in expression_set.endogenous if gene in signature.index]
        self.logger.log_step(
            "Deconvolution",
            f"{len(genes)} genes shared with a {signature.shape[1]}-cell-type signature",
        )
        if len(genes) < max(self.config.min_overlap, 1):
            raise DataValidationError(
                f"Only {len(genes)} genes overlap the signature matrix "
                f"(need at least {self.config.min_overlap})"
            )

        X = signature.loc[genes].to_numpy(dtype=float)
        if not np.all(np.isfinite(X)):
            raise DataValidationError("Signature matrix contains missing or non-finite values")

        background = self.derive_background(expression_set, layer).loc[genes]
        weights = self.derive_weights(expression_set.counts.loc[genes])
        observed = norm.loc[genes]

        beta = pd.DataFrame(np.nan, index=signature.columns, columns=norm.columns)
        failed: List[str] = []
        for segment in norm.columns:
            target = (observed[segment] - background[segment]).to_numpy()
            try:
                beta[segment] = self.solver.solve(X, target, weights[segment].to_numpy())
            except SolverError as e:
                self.logger.log_warning(f"Deconvolution failed for segment '{segment}': {e}")
                failed.append(segment)

        yhat = pd.DataFrame(X @ beta.to_numpy(), index=genes, columns=norm.columns) + background
        resids = self._log2_resids(observed, yhat, self._epsilon(norm))

        self.logger.log_success(
            f"Deconvolved {len(norm.columns) - len(failed)}/{len(norm.columns)} segments"
        )
        return DeconvolutionResult(
            beta=beta,
            prop_of_all=self.proportions(beta),
            yhat=yhat,
            resids=resids,
            failed_segments=failed,
        )

    @staticmethod
    def proportions(beta: pd.DataFrame) -> pd.DataFrame:
        totals = beta.sum(axis=0, min_count=1)
        return beta.div(totals.where(totals > 0), axis=1)

    def collapse_cell_types(
        self, result: DeconvolutionResult, matching: Dict[str, Sequence[str]]
    ) -> DeconvolutionResult:
        """
        Merge cell types by summing their abundances.

        Cell types not named in ``matching`` are carried over unchanged, so
        the per-segment total abundance is preserved.

        Args:
            result: Deconvolution result to collapse
            matching: collapsed name -> original cell type names

        Returns:
            DeconvolutionResult: collapsed abundances and recomputed proportions
        """
        beta = result.beta
        seen: Dict[str, str] = {}
        for name, members in matching.items():
            for cell_type in members:
                if cell_type not in beta.index:
                    raise DataValidationError(f"Unknown cell type '{cell_type}' in group '{name}'")
                if cell_type in seen:
                    raise DataValidationError(
                        f"Cell type '{cell_type}' listed in both '{seen[cell_type]}' and '{name}'"
                    )
                seen[cell_type] = name

        unlisted = [cell_type for cell_type in beta.index if cell_type not in seen]
        clashes = sorted(set(matching) & set(unlisted))
        if clashes:
            raise DataValidationError(f"Collapsed names clash with uncollapsed cell types: {clashes}")

        rows = {
            name: beta.loc[list(members)].sum(axis=0, min_count=1)
            for name, members in matching.items()
        }
        for cell_type in unlisted:
            rows[cell_type] = beta.loc[cell_type]
        collapsed = pd.DataFrame(rows).T.reindex(columns=beta.columns)

        self.logger.log_step(
            "Cell type collapsing", f"{len(beta.index)} -> {len(collapsed.index)} cell types"
        )
        return DeconvolutionResult(
            beta=collapsed,
            prop_of_all=self.proportions(collapsed),
            yhat=result.yhat,
            resids=result.resids,
            failed_segments=list(result.failed_segments),
        )

    def reverse_decon(self, expression_set: ExpressionSet, beta: pd.DataFrame) -> ReverseDeconResult:
        """
        Model each gene as a non-negative combination of cell-type abundances.

        Cell types with no abundance anywhere and segments without a
        deconvolution estimate are left out. Correlation and residual SD are
        computed on the log2 scale and only describe the fit.

        Args:
            expression_set: Normalized target-level expression set
            beta: cell types x segments abundance (possibly collapsed)

        Returns:
            ReverseDeconResult: coefficients, fitted values, residuals,
            correlation and residual SD per gene
        """
        norm = expression_set.layer(self.config.layer)
        segments = [seg for seg in beta.columns if seg in norm.columns and beta[seg].notna().all()]
        beta = beta[segments]
        beta = beta.loc[(beta > 0).any(axis=1)]
        if beta.empty or not segments:
            raise DataValidationError("No usable cell-type abundances for reverse deconvolution")

        genes = list(expression_set.endogenous)
        observed = norm.loc[genes, segments]
        X = beta.T.to_numpy(dtype=float)
        unit_weights = np.ones(len(segments))
        self.logger.log_step(
            "Reverse deconvolution", f"{len(genes)} genes on {len(beta.index)} cell types"
        )

        coefs = pd.DataFrame(np.nan, index=genes, columns=beta.index)
        for gene in genes:
            try:
                coefs.loc[gene] = self.solver.solve(X, observed.loc[gene].to_numpy(), unit_weights)
            except SolverError as e:
                self.logger.log_warning(f"Reverse deconvolution failed for gene '{gene}': {e}")

        yhat = pd.DataFrame(coefs.to_numpy() @ beta.to_numpy(), index=genes, columns=segments)
        epsilon = self._epsilon(norm)
        resids = self._log2_resids(observed, yhat, epsilon)

        log_observed = np.log2(observed.clip(lower=epsilon))
        log_fitted = np.log2(yhat.clip(lower=epsilon))
        cors = pd.Series(
            {gene: log_observed.loc[gene].corr(log_fitted.loc[gene]) for gene in genes},
            name="cor",
        )
        resid_sd = resids.std(axis=1, ddof=1).rename("resid_sd")
        return ReverseDeconResult(
            coefs=coefs, yhat=yhat, resids=resids, cors=cors, resid_sd=resid_sd
        )
