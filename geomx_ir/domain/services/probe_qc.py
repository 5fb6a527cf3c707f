"""
Probe-level quality control: low-ratio probes and Grubbs outliers.
"""

from dataclasses import replace
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from geomx_ir.domain.exceptions import (
    ConfigurationError,
    DataValidationError,
    InvariantViolationError,
)
from geomx_ir.domain.models import (
    PROBE_LEVEL,
    ExpressionSet,
    ProbeQCResult,
    ProbeQCThresholds,
)
from geomx_ir.domain.services.statistical_analyzer import StatisticalAnalyzer
from geomx_ir.infrastructure.logger import Logger

MIN_PROBES_FOR_OUTLIER_TEST = 3


class ProbeQCFilter:
    """Flags outlier probes and removes them globally or per segment"""

    def __init__(self, thresholds: ProbeQCThresholds, logger: Optional[Logger] = None):
        self.thresholds = thresholds
        self.logger = logger if logger is not None else Logger()
        for field_name in ("min_probe_ratio", "percent_fail_grubbs", "outlier_alpha"):
            if getattr(thresholds, field_name, None) is None:
                raise ConfigurationError(field_name)

    def compute_probe_ratios(self, expression_set: ExpressionSet) -> pd.Series:
        """
        Ratio of each probe's geometric mean to its target's geometric mean.

        Both means run over every segment; the target mean pools all values of
        all probes of that target.

        Args:
            expression_set: Probe-level expression set (endogenous probes)

        Returns:
            pd.Series: Ratio per probe
        """
        counts = expression_set.counts
        targets = expression_set.feature_info["TargetName"]

        probe_means = pd.Series(
            StatisticalAnalyzer.geo_mean(counts.to_numpy(), axis=1), index=counts.index
        )
        target_means = {
            target: StatisticalAnalyzer.geo_mean(counts.loc[probes].to_numpy())
            for target, probes in targets.groupby(targets, sort=False).groups.items()
        }
        with np.errstate(divide="ignore", invalid="ignore"):
            ratios = probe_means / targets.map(target_means).astype(float)
        return ratios.rename("ProbeRatio")

    def find_outliers(self, expression_set: ExpressionSet) -> pd.DataFrame:
        """
        Per-segment Grubbs outliers among probes sharing a target.

        Targets with fewer than three probes are never tested.

        Args:
            expression_set: Probe-level expression set (endogenous probes)

        Returns:
            pd.DataFrame: Boolean probes x segments matrix
        """
        counts = expression_set.counts
        targets = expression_set.feature_info["TargetName"]
        outliers = pd.DataFrame(False, index=counts.index, columns=counts.columns)

        with np.errstate(divide="ignore", invalid="ignore"):
            log_counts = np.log10(counts.to_numpy(dtype=float))

        tested = 0
        for _, positions in targets.groupby(targets, sort=False).indices.items():
            if len(positions) < MIN_PROBES_FOR_OUTLIER_TEST:
                continue
            tested += 1
            block = log_counts[positions, :]
            for col in range(block.shape[1]):
                mask = StatisticalAnalyzer.grubbs_outliers(
                    block[:, col], alpha=self.thresholds.outlier_alpha
                )
                if mask.any():
                    outliers.iloc[positions[mask], col] = True

        self.logger.log_step("Grubbs outlier test", f"Tested {tested} multi-probe targets")
        return outliers

    def flag_probes(self, expression_set: ExpressionSet) -> ProbeQCResult:
        """
        Flag probes and apply global and local removal.

        Global removal drops a probe row when its ratio is below
        ``min_probe_ratio`` or it is a Grubbs outlier in at least
        ``percent_fail_grubbs`` percent of segments. A target never loses its
        last probe: if every probe of a target would go, the least outlying
        one is kept. Remaining probes that are outliers in individual
        segments are set to NaN there, unless that would leave their target
        without a value in the segment; such cases are counted in
        ``LocalMaskSkipped``. Negative-control probes pass through.

        Args:
            expression_set: Probe-level expression set

        Returns:
            ProbeQCResult: flags, local outlier matrix and the filtered set
        """
        if expression_set.feature_level != PROBE_LEVEL:
            raise DataValidationError("Probe QC needs probe-level counts")

        self.logger.log_step("Probe QC", f"Flagging {len(expression_set.features)} probes")
        endogenous = expression_set.subset(features=expression_set.endogenous)

        ratios = self.compute_probe_ratios(endogenous)
        outliers = self.find_outliers(endogenous)
        percent_fail = outliers.mean(axis=1) * 100

        flags = pd.DataFrame(
            {
                "TargetName": endogenous.feature_info["TargetName"],
                "ProbeRatio": ratios,
                "LowProbeRatio": ratios < self.thresholds.min_probe_ratio,
                "PercentFailGrubbs": percent_fail,
                "GlobalGrubbsOutlier": percent_fail >= self.thresholds.percent_fail_grubbs,
            }
        )
        flags["LocalGrubbsOutlier"] = outliers.any(axis=1) & ~flags["GlobalGrubbsOutlier"]
        flags["Remove"] = flags["LowProbeRatio"] | flags["GlobalGrubbsOutlier"]
        flags["RetainedByClamp"] = False
        flags = self._clamp_orphaned_targets(flags)

        kept_probes = list(flags.index[~flags["Remove"]]) + list(expression_set.negatives)
        filtered = expression_set.subset(features=kept_probes)
        self._check_no_orphans(expression_set, filtered)

        local, skipped = self._local_masks(filtered, flags, outliers)
        flags["LocalMaskSkipped"] = skipped.sum(axis=1).reindex(flags.index, fill_value=0)
        flags["LocalMaskSkipped"] = flags["LocalMaskSkipped"].astype(int)
        if self.thresholds.remove_local_outliers and local.to_numpy().any():
            counts = filtered.counts.copy()
            counts.loc[local.index] = counts.loc[local.index].mask(local)
            filtered = replace(filtered, counts=counts)

        self.logger.log_counts("Probe QC", self.summarize(flags).iloc[0].to_dict())
        self.logger.log_matrix_shape("After probe QC", filtered.shape)
        return ProbeQCResult(flags=flags, local_outliers=outliers, expression_set=filtered)

    def _local_masks(
        self, filtered: ExpressionSet, flags: pd.DataFrame, outliers: pd.DataFrame
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Split local outliers of retained probes into applied and skipped masks.

        A mask is only applied where another retained probe of the same target
        keeps a value in that segment, so no (target, segment) cell is emptied.
        Clamped probes are never masked.

        Returns:
            Tuple of boolean probes x segments frames: (applied, skipped)
        """
        retained = flags.index[~flags["Remove"]]
        local = outliers.loc[retained].copy()
        local.loc[flags.loc[retained, "RetainedByClamp"].to_numpy()] = False

        survives = filtered.counts.loc[retained].notna() & ~local
        covered = survives.groupby(flags.loc[retained, "TargetName"]).transform("any")
        skipped = local & ~covered
        if self.thresholds.remove_local_outliers and skipped.to_numpy().any():
            self.logger.log_warning(
                f"Kept {int(skipped.to_numpy().sum())} local outlier values that were "
                f"the last usable value of their target in a segment"
            )
        return local & covered, skipped

    def _clamp_orphaned_targets(self, flags: pd.DataFrame) -> pd.DataFrame:
        """Keep the least outlying probe of any target that would lose every probe"""
        flags = flags.copy()
        for target, group in flags.groupby("TargetName", sort=False):
            if not group["Remove"].all():
                continue
            ranked = group.assign(_probe=group.index.astype(str)).sort_values(
                ["PercentFailGrubbs", "ProbeRatio", "_probe"],
                ascending=[True, False, True],
                na_position="last",
            )
            keep = ranked.index[0]
            flags.loc[keep, "Remove"] = False
            flags.loc[keep, "RetainedByClamp"] = True
            self.logger.log_warning(
                f"Every probe of target '{target}' failed QC; retaining probe '{keep}'"
            )
        return flags

    @staticmethod
    def _check_no_orphans(before: ExpressionSet, after: ExpressionSet) -> None:
        targets_before = set(before.feature_info["TargetName"])
        targets_after = set(after.feature_info["TargetName"])
        orphaned = sorted(targets_before - targets_after)
        if orphaned:
            raise InvariantViolationError(
                f"Probe QC removed every probe for targets: {orphaned[:10]}"
            )

    @staticmethod
    def summarize(flags: pd.DataFrame) -> pd.DataFrame:
        """Passed / Global / Local probe counts"""
        n_global = int(flags["Remove"].sum())
        n_local = int((flags["LocalGrubbsOutlier"] & ~flags["Remove"]).sum())
        return pd.DataFrame(
            [
                {
                    "Passed": len(flags) - n_global - n_local,
                    "Global": n_global,
                    "Local": n_local,
                    "RetainedByClamp": int(flags["RetainedByClamp"].sum()),
                }
            ]
        )
