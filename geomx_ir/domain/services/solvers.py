"""
Numerical back ends: linear mixed models (statsmodels) and weighted
non-negative least squares (scipy). Both raise a per-entity error instead of
returning partial output so callers can isolate failures.
"""

import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy.optimize import nnls
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from geomx_ir.domain.exceptions import ModelFitError, SolverError


@dataclass
class ContrastEstimate:
    level: str
    estimate: float
    p_value: float


class MixedModelFitter:
    """Fits ``expr ~ test + (1 | group)`` (optionally with a random slope) by REML"""

    def __init__(self, reml: bool = True, max_iterations: int = 200):
        self.reml = reml
        self.max_iterations = max_iterations

    def fit(
        self,
        data: pd.DataFrame,
        test_levels: List[str],
        random_slope: bool = False,
    ) -> List[ContrastEstimate]:
        """
        Fit one gene.

        Args:
            data: Columns ``expr`` (log2 expression), ``test`` (level label)
                and ``group`` (random-effect grouping)
            test_levels: Non-reference levels, one contrast each against
                the level coded by all-zero indicators
            random_slope: Add a per-group random slope for the test variable

        Returns:
            List[ContrastEstimate]: one entry per test level

        Raises:
            ModelFitError: if the fit raises, does not converge or yields
                non-finite estimates
        """
        design = pd.DataFrame({"expr": data["expr"].to_numpy(), "group": data["group"].to_numpy()})
        # Indicator columns avoid formula parsing of level labels such as "I/R"
        terms: Dict[str, str] = {}
        for i, level in enumerate(test_levels):
            term = f"level_{i}"
            design[term] = (data["test"].to_numpy() == level).astype(float)
            terms[term] = level

        if not np.all(np.isfinite(design["expr"])):
            raise ModelFitError("Expression contains non-finite values")

        formula = "expr ~ " + " + ".join(terms)
        re_formula = ("~" + " + ".join(terms)) if random_slope else None

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                warnings.simplefilter("ignore", RuntimeWarning)
                model = smf.mixedlm(formula, design, groups=design["group"], re_formula=re_formula)
                result = model.fit(reml=self.reml, maxiter=self.max_iterations)
        except Exception as e:
            raise ModelFitError(f"Mixed model fit failed: {e}") from e

        if not getattr(result, "converged", True):
            raise ModelFitError("Mixed model did not converge")

        estimates = []
        for term, level in terms.items():
            estimate = float(result.params[term])
            p_value = float(result.pvalues[term])
            if not (np.isfinite(estimate) and np.isfinite(p_value)):
                raise ModelFitError(f"Non-finite estimate for level '{level}'")
            estimates.append(ContrastEstimate(level=level, estimate=estimate, p_value=p_value))
        return estimates


class WeightedNNLSSolver:
    """Solves ``min sum w (y - X beta)^2`` subject to ``beta >= 0``"""

    def __init__(self, max_iterations: Optional[int] = None):
        self.max_iterations = max_iterations

    def solve(self, X: np.ndarray, y: np.ndarray, weights: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        weights = np.asarray(weights, dtype=float)

        usable = np.isfinite(y) & np.isfinite(weights) & np.all(np.isfinite(X), axis=1)
        if usable.sum() < X.shape[1]:
            raise SolverError(
                f"Only {int(usable.sum())} usable data points for {X.shape[1]} coefficients"
            )

        sqrt_w = np.sqrt(weights[usable])
        A = X[usable] * sqrt_w[:, None]
        b = y[usable] * sqrt_w
        try:
            beta, _ = nnls(A, b, maxiter=self.max_iterations)
        except (RuntimeError, ValueError) as e:
            raise SolverError(f"NNLS failed: {e}") from e

        if not np.all(np.isfinite(beta)):
            raise SolverError("NNLS returned non-finite coefficients")
        return beta
