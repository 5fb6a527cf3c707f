"""
Negative-control background summaries per segment and probe module.
"""

from typing import Optional

import pandas as pd

from geomx_ir.domain.exceptions import DataValidationError
from geomx_ir.domain.models import NEGATIVE, PROBE_LEVEL, ExpressionSet, NegativeControlStats
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.logger import Logger


def summarize_negative_controls(
    expression_set: ExpressionSet, logger: Optional[Logger] = None
) -> NegativeControlStats:
    """
    Geometric mean and geometric SD of negative-control probes, grouped by module.

    Only probes with the Negative code class contribute. Values are computed in
    the log domain so shifted low counts do not underflow.

    Args:
        expression_set: Probe-level expression set

    Returns:
        NegativeControlStats: segments x modules tables
    """
    if expression_set.feature_level != PROBE_LEVEL:
        raise DataValidationError("Negative-control statistics need probe-level counts")

    info = expression_set.feature_info
    negatives = info[info["CodeClass"] == NEGATIVE]
    if negatives.empty:
        raise DataValidationError("No negative-control probes found (CodeClass == 'Negative')")

    geo_means = {}
    geo_sds = {}
    for module, module_probes in negatives.groupby("Module", sort=False):
        values = expression_set.counts.loc[module_probes.index]
        geo_means[module] = StatisticalAnalyzer.geo_mean(values.to_numpy(), axis=0)
        geo_sds[module] = StatisticalAnalyzer.geo_sd(values.to_numpy(), axis=0)

    segments = expression_set.counts.columns
    stats = NegativeControlStats(
        geo_mean=pd.DataFrame(geo_means, index=segments),
        geo_sd=pd.DataFrame(geo_sds, index=segments),
    )

    if logger is not None:
        logger.log_step(
            "Negative controls",
            f"Summarized {len(negatives)} negative probes across modules {list(geo_means)}",
        )
    return stats
