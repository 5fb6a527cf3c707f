"""
Pipeline logging for GeoMx processing runs.

One named logger ("geomx_ir") writes to the console and, when a log file is
given, to that file as well. The helper methods keep stage messages uniform so
that a run log reads as a sequence of QC and analysis steps.
"""

import logging
import os
from typing import Dict, Optional, Tuple


class Logger:
    """Stage-oriented logging for the GeoMx pipeline"""

    def __init__(self, log_file: Optional[str] = None, level: int = logging.INFO):
        self.logger = logging.getLogger("geomx_ir")
        self.logger.setLevel(level)
        self.logger.propagate = False

        # Re-creating the Logger (e.g. once --log_file is known) must not duplicate output
        self.logger.handlers.clear()

        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        console = logging.StreamHandler()
        console.setFormatter(formatter)
        self.logger.addHandler(console)

        if log_file:
            log_dir = os.path.dirname(os.path.abspath(log_file))
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def log_step(self, step: str, details: str) -> None:
        self.logger.info(f"🔍 {step}: {details}")

    def log_error(self, error: Exception, context: str) -> None:
        self.logger.error(f"❌ Error in {context}: {error}", exc_info=True)

    def log_warning(self, warning: str) -> None:
        self.logger.warning(f"⚠️ {warning}")

    def log_success(self, message: str) -> None:
        self.logger.info(f"✅ {message}")

    def log_save(self, file_path: str) -> None:
        self.logger.info(f"💾 Saved to: {file_path}")

    def log_matrix_shape(self, matrix_name: str, shape: Tuple[int, int]) -> None:
        """Log a features x segments matrix size"""
        n_features, n_segments = shape
        self.logger.info(f"📊 {matrix_name}: {n_features} features x {n_segments} segments")

    def log_threshold(self, threshold_name: str, value: float) -> None:
        self.logger.info(f"🎯 {threshold_name}: {value:.4g}")

    def log_statistics(self, stat_name: str, value: float) -> None:
        self.logger.info(f"📈 {stat_name}: {value:.6f}")

    def log_filter(self, stage: str, kept: int, total: int, unit: str) -> None:
        """Log how many entities a filtering stage kept and removed"""
        self.logger.info(
            f"🧹 {stage}: kept {kept}/{total} {unit}s, removed {total - kept}"
        )

    def log_counts(self, label: str, counts: Dict[str, int]) -> None:
        """Log a small label -> count table on one line"""
        rendered = ", ".join(f"{key}={value}" for key, value in counts.items())
        self.logger.info(f"🧮 {label}: {rendered}")
