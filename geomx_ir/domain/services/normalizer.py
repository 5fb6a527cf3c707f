"""
Per-segment scale factors and normalized data layers.
"""

from typing import Optional

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import (
    ConfigurationError,
    DataValidationError,
    InvariantViolationError,
)
from geomx_ir.domain.models import (
    ExpressionSet,
    NegativeControlStats,
    NormalizationConfig,
    NormalizationResult,
)
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.logger import Logger

QUANTILE_LAYER = "q_norm"
BACKGROUND_LAYER = "neg_norm"


class Normalizer:
    """Quantile (Q3) and negative-background normalization"""

    def __init__(self, config: NormalizationConfig, logger: Optional[Logger] = None):
        self.config = config
        self.logger = logger if logger is not None else Logger()
        if config.quantile is None:
            raise ConfigurationError("quantile")
        if not 0 < config.quantile <= 1:
            raise ConfigurationError("quantile", f"must be in (0, 1], got {config.quantile}")
        unknown = set(config.methods) - {QUANTILE_LAYER, BACKGROUND_LAYER}
        if unknown:
            raise ConfigurationError("methods", f"unknown normalization methods {sorted(unknown)}")

    def quantile_factors(self, expression_set: ExpressionSet) -> pd.Series:
        """
        Per-segment quantile of all target counts, divided by the geometric
        mean of those quantiles so factors center on 1.

        Args:
            expression_set: Target-level expression set

        Returns:
            pd.Series: factor per segment
        """
        quantiles = expression_set.counts.quantile(self.config.quantile, axis=0)
        factors = quantiles / StatisticalAnalyzer.geo_mean(quantiles.to_numpy())
        return self._checked(factors.rename(QUANTILE_LAYER), "quantile")

    def background_factors(
        self, expression_set: ExpressionSet, negative_stats: NegativeControlStats
    ) -> pd.DataFrame:
        """
        Per-segment negative-control geometric mean, centered per module.

        Args:
            expression_set: Target-level expression set
            negative_stats: Negative-control statistics

        Returns:
            pd.DataFrame: segments x modules factors
        """
        geo_mean = negative_stats.geo_mean.loc[expression_set.segments]
        factors = geo_mean.apply(
            lambda col: col / StatisticalAnalyzer.geo_mean(col.to_numpy()), axis=0
        )
        for module in factors.columns:
            self._checked(factors[module], f"background ({module})")
        return factors

    def _checked(self, factors, label: str):
        values = np.asarray(factors, dtype=float)
        if not np.all(np.isfinite(values)) or np.any(values <= 0):
            raise InvariantViolationError(f"Non-positive or non-finite {label} normalization factors")
        return factors

    def normalize(
        self, expression_set: ExpressionSet, negative_stats: NegativeControlStats
    ) -> NormalizationResult:
        """
        Add one normalized layer per configured method.

        Layers hold ``counts / factor``; raw counts are left untouched, so
        multiplying a layer by its factors returns the raw counts.

        Args:
            expression_set: Target-level expression set after detection filtering
            negative_stats: Negative-control statistics

        Returns:
            NormalizationResult: factor table and the set with new layers
        """
        self.logger.log_step("Normalization", f"Methods: {list(self.config.methods)}")
        factor_table = pd.DataFrame(index=expression_set.counts.columns)
        result_set = expression_set

        if QUANTILE_LAYER in self.config.methods:
            factors = self.quantile_factors(expression_set)
            factor_table[QUANTILE_LAYER] = factors
            result_set = result_set.with_layer(
                QUANTILE_LAYER, expression_set.counts.div(factors, axis=1)
            )
            self.logger.log_statistics("Q3 factor range", float(factors.max() - factors.min()))

        if BACKGROUND_LAYER in self.config.methods:
            module_factors = self.background_factors(expression_set, negative_stats)
            modules = expression_set.feature_info["Module"]
            missing = sorted(set(modules) - set(module_factors.columns))
            if missing:
                raise DataValidationError(f"No negative controls for modules: {missing}")
            per_feature = module_factors[modules.to_numpy()].T
            per_feature.index = expression_set.counts.index
            result_set = result_set.with_layer(
                BACKGROUND_LAYER, expression_set.counts / per_feature
            )
            for module in module_factors.columns:
                factor_table[f"{BACKGROUND_LAYER}_{module}"] = module_factors[module]

        self.logger.log_success(f"Added layers {list(result_set.layers)}")
        return NormalizationResult(factors=factor_table, expression_set=result_set)

    @staticmethod
    def log2(layer: pd.DataFrame) -> pd.DataFrame:
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log2(layer)
