"""
Exception hierarchy for the GeoMx processing pipeline.
"""

from typing import Optional


class GeoMxPipelineError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(GeoMxPipelineError):
    """Raised when a required threshold or annotation column is missing or malformed."""

    def __init__(self, field: Optional[str] = None, reason: Optional[str] = None):
        if field and reason:
            msg = f"Invalid configuration for '{field}': {reason}"
        elif field:
            msg = f"Missing required configuration field: '{field}'"
        else:
            msg = reason or "Invalid configuration"
        super().__init__(msg)
        self.field = field
        self.reason = reason


class DataValidationError(GeoMxPipelineError):
    """Raised when input tables do not match the expected shape or content."""


class InvariantViolationError(GeoMxPipelineError):
    """Raised when a stage would break a domain invariant (orphaned target, bad LOQ, ...)."""


class EmptyResultError(GeoMxPipelineError):
    """Raised when filtering leaves no segments or no genes."""

    def __init__(self, stage: str, entity: str):
        super().__init__(f"{stage} removed every {entity}; cannot continue")
        self.stage = stage
        self.entity = entity


class ModelFitError(GeoMxPipelineError):
    """Raised by a mixed-model fit for a single gene; callers isolate it."""


class SolverError(GeoMxPipelineError):
    """Raised by the non-negative least-squares solver for a single fit."""
