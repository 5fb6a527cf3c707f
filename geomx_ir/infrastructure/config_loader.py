"""
JSON configuration file loading and validation for the GeoMx processing pipeline.
"""

import json
import os
from dataclasses import fields, replace
from typing import Any, Dict, Mapping, Optional

from geomx_ir.domain.exceptions import ConfigurationError
from geomx_ir.domain.models import (
    AnnotationColumns,
    DeconvolutionConfig,
    DEDesign,
    DetectionThresholds,
    NormalizationConfig,
    ProbeQCThresholds,
    ProcessingConfig,
    SegmentQCThresholds,
)
from geomx_ir.infrastructure.logger import Logger

SECTIONS = {
    "annotation_columns": AnnotationColumns,
    "segment_qc": SegmentQCThresholds,
    "probe_qc": ProbeQCThresholds,
    "detection": DetectionThresholds,
    "normalization": NormalizationConfig,
    "deconvolution": DeconvolutionConfig,
}


class ConfigLoader:
    """Builds typed configuration sections from a JSON mapping"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger if logger is not None else Logger()

    def load_file(self, file_path: str) -> Dict[str, Any]:
        """Read a JSON configuration file"""
        if not os.path.exists(file_path):
            raise ConfigurationError("config", f"file not found: {file_path}")
        try:
            with open(file_path) as f:
                mapping = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError("config", f"invalid JSON in {file_path}: {e}") from e

        if not isinstance(mapping, dict):
            raise ConfigurationError("config", "top level must be a JSON object")
        self.logger.log_step("Configuration", f"Loaded settings from {file_path}")
        return mapping

    def build_section(self, cls, values: Mapping[str, Any], section: str):
        """
        Instantiate one configuration dataclass from a mapping.

        Keys must name fields of ``cls``. ``null`` values count as missing.
        Numeric fields must hold numbers, boolean fields booleans, and
        sequence fields lists.

        Args:
            cls: Configuration dataclass
            values: Raw settings
            section: Section name used in error messages

        Returns:
            Instance of ``cls``
        """
        if not isinstance(values, Mapping):
            raise ConfigurationError(section, "expected a JSON object")

        known = {f.name: f for f in fields(cls)}
        coerced = {}
        for key, value in values.items():
            qualified = f"{section}.{key}"
            if key not in known:
                raise ConfigurationError(qualified, "unknown setting")
            if value is None:
                if known[key].default is None:
                    coerced[key] = None
                    continue
                raise ConfigurationError(qualified)
            coerced[key] = self._coerce(qualified, known[key].default, value)
        return cls(**coerced)

    @staticmethod
    def _coerce(qualified: str, default: Any, value: Any) -> Any:
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigurationError(qualified, f"expected true/false, got {value!r}")
            return value
        if isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(qualified, f"expected a number, got {value!r}")
            return value
        if isinstance(default, tuple):
            if not isinstance(value, (list, tuple)):
                raise ConfigurationError(qualified, f"expected a list, got {value!r}")
            return tuple(value)
        if isinstance(default, str) and not isinstance(value, str):
            raise ConfigurationError(qualified, f"expected text, got {value!r}")
        return value

    def apply(self, config: ProcessingConfig, mapping: Mapping[str, Any]) -> ProcessingConfig:
        """
        Overlay a configuration mapping onto a ProcessingConfig.

        Args:
            config: Base configuration (usually from the command line)
            mapping: Parsed JSON settings

        Returns:
            ProcessingConfig: new configuration with the sections replaced
        """
        updates: Dict[str, Any] = {}
        for key, value in mapping.items():
            if key in SECTIONS:
                updates[key] = self.build_section(SECTIONS[key], value, key)
            elif key == "de_designs":
                if not isinstance(value, list) or not value:
                    raise ConfigurationError("de_designs", "expected a non-empty list")
                updates[key] = [
                    self.build_section(DEDesign, item, f"de_designs[{i}]")
                    for i, item in enumerate(value)
                ]
            elif key == "use_da_logic":
                updates[key] = self._coerce(key, True, value)
            else:
                raise ConfigurationError(key, "unknown configuration section")

        for section in updates:
            self.logger.log_step("Configuration", f"Applied section '{section}'")
        return replace(config, **updates)
