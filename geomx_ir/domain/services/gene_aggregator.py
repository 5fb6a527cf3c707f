"""
Collapses probe-level counts to one value per gene target.
"""

from typing import Optional

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import DataValidationError, InvariantViolationError
from geomx_ir.domain.models import (
    PROBE_LEVEL,
    TARGET_LEVEL,
    AggregationResult,
    ExpressionSet,
)
from geomx_ir.domain.services.negative_controls import summarize_negative_controls
from geomx_ir.infrastructure.logger import Logger


class GeneAggregator:
    """Geometric-mean aggregation of probes sharing a target"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger if logger is not None else Logger()

    def aggregate(self, expression_set: ExpressionSet) -> AggregationResult:
        """
        Aggregate probes to targets.

        Each (target, segment) value is the geometric mean of that target's
        probe values in the segment. Locally removed (NaN) values are left out
        of the mean rather than counted as zero; a cell with no usable value at
        all is an error. Segment order and segment annotation are carried over
        unchanged.

        Args:
            expression_set: Probe-level expression set after probe QC

        Returns:
            AggregationResult: target-level set and negative-control statistics
        """
        if expression_set.feature_level != PROBE_LEVEL:
            raise DataValidationError("Aggregation needs probe-level counts")

        self.logger.log_step(
            "Gene aggregation", f"Aggregating {len(expression_set.features)} probes"
        )
        info = expression_set.feature_info
        targets = info["TargetName"]

        with np.errstate(divide="ignore"):
            log_counts = np.log(expression_set.counts.astype(float))
        # groupby mean skips NaN
        aggregated = np.exp(log_counts.groupby(targets, sort=False).mean())
        aggregated.index.name = None

        missing = aggregated.isna()
        if missing.to_numpy().any():
            cells = [
                (aggregated.index[row], aggregated.columns[col])
                for row, col in np.argwhere(missing.to_numpy())
            ]
            raise InvariantViolationError(
                f"{len(cells)} (target, segment) values without any usable probe value: "
                f"{cells[:10]}"
            )

        grouped = info.groupby(targets, sort=False)
        target_info = pd.DataFrame(
            {
                "Module": grouped["Module"].first(),
                "CodeClass": grouped["CodeClass"].first(),
                "NumProbes": grouped.size(),
            }
        )
        target_info.index.name = None
        target_info = target_info.loc[aggregated.index]

        target_set = ExpressionSet(
            counts=aggregated[expression_set.counts.columns],
            feature_info=target_info,
            segment_info=expression_set.segment_info.copy(),
            feature_level=TARGET_LEVEL,
        )
        negative_stats = summarize_negative_controls(expression_set, self.logger)

        self.logger.log_matrix_shape("Aggregated target matrix", target_set.shape)
        return AggregationResult(expression_set=target_set, negative_stats=negative_stats)
