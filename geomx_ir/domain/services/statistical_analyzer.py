"""
Shared statistics for the GeoMx processing pipeline: geometric summaries,
Grubbs outlier detection and false-discovery-rate correction.
"""

from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import fdrcorrection

from geomx_ir.infrastructure.logger import Logger

ArrayLike = Union[np.ndarray, pd.Series, pd.DataFrame, list]


class StatisticalAnalyzer:
    """Statistical helpers used across pipeline stages"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger if logger is not None else Logger()

    @staticmethod
    def geo_mean(values: ArrayLike, axis: Optional[int] = None) -> Union[float, np.ndarray]:
        """
        Geometric mean computed in the log domain, ignoring NaN.

        Args:
            values: Positive values
            axis: Axis to reduce over; None flattens

        Returns:
            Geometric mean (0 when any value is 0, NaN when nothing is left)
        """
        arr = np.asarray(values, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            logs = np.log(arr)
            if axis is None:
                logs = logs[~np.isnan(logs)]
                if logs.size == 0:
                    return float("nan")
                return float(np.exp(np.mean(logs)))
            counts = np.sum(~np.isnan(logs), axis=axis)
            sums = np.nansum(logs, axis=axis)
            means = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
            return np.exp(means)

    @staticmethod
    def geo_sd(values: ArrayLike, axis: Optional[int] = None) -> Union[float, np.ndarray]:
        """Geometric standard deviation, exp(sd(log x)) with ddof=1, NaN ignored"""
        arr = np.asarray(values, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            logs = np.log(arr)
            if axis is None:
                logs = logs[~np.isnan(logs)]
                if logs.size < 2:
                    return float("nan")
                return float(np.exp(np.std(logs, ddof=1)))
            return np.exp(np.nanstd(logs, axis=axis, ddof=1))

    @staticmethod
    def grubbs_outliers(values: ArrayLike, alpha: float = 0.01) -> np.ndarray:
        """
        Iterative two-sided Grubbs test.

        Each round tests the value furthest from the mean; if its G statistic
        exceeds the critical value it is marked and removed, and the test is
        repeated on the rest. Stops when nothing is significant, the SD is
        zero, or fewer than 3 values remain. NaN entries are never flagged.

        Args:
            values: Observations (usually log10 probe counts)
            alpha: Significance level

        Returns:
            Boolean mask, True where the value is an outlier
        """
        arr = np.asarray(values, dtype=float)
        flagged = np.zeros(arr.shape, dtype=bool)
        active = ~np.isnan(arr)

        while active.sum() >= 3:
            idx = np.flatnonzero(active)
            sample = arr[idx]
            n = sample.size
            sd = np.std(sample, ddof=1)
            if sd == 0 or not np.isfinite(sd):
                break

            deviations = np.abs(sample - np.mean(sample))
            candidate = int(np.argmax(deviations))
            g_stat = deviations[candidate] / sd

            t_crit = stats.t.ppf(1 - alpha / (2 * n), n - 2)
            g_crit = ((n - 1) / np.sqrt(n)) * np.sqrt(t_crit**2 / (n - 2 + t_crit**2))
            if g_stat <= g_crit:
                break

            flagged[idx[candidate]] = True
            active[idx[candidate]] = False

        return flagged

    @staticmethod
    def fdr_bh(pvalues: ArrayLike) -> np.ndarray:
        """Benjamini-Hochberg adjusted p-values; NaN entries stay NaN and are not counted"""
        pvals = np.asarray(pvalues, dtype=float)
        adjusted = np.full(pvals.shape, np.nan)
        valid = ~np.isnan(pvals)
        if valid.any():
            _, corrected = fdrcorrection(pvals[valid], alpha=0.05)
            adjusted[valid] = corrected
        return adjusted

    def summarize_rates(self, rates: pd.Series, cutoffs) -> pd.DataFrame:
        """
        Count how many entries reach each rate cutoff.

        Args:
            rates: Detection rates in [0, 1]
            cutoffs: Fractions to report

        Returns:
            pd.DataFrame: Cutoff, count and fraction of entries at or above it
        """
        total = len(rates)
        rows = []
        for cutoff in cutoffs:
            count = int((rates >= cutoff).sum())
            rows.append(
                {
                    "Cutoff": f"{cutoff:.0%}",
                    "Count": count,
                    "Fraction": count / total if total else np.nan,
                }
            )
        summary = pd.DataFrame(rows)
        self.logger.log_step("Rate summary", f"Summarized {total} rates at {len(rows)} cutoffs")
        return summary
