"""Tests for geomx_ir.domain.exceptions."""

import pytest

from geomx_ir.domain.exceptions import (
    ConfigurationError,
    DataValidationError,
    EmptyResultError,
    GeoMxPipelineError,
    InvariantViolationError,
    ModelFitError,
    SolverError,
)


class TestExceptionHierarchy:
    def test_all_inherit_from_pipeline_error(self):
        for exc_cls in (ConfigurationError, DataValidationError, InvariantViolationError,
                        EmptyResultError, ModelFitError, SolverError):
            assert issubclass(exc_cls, GeoMxPipelineError)

    def test_catch_all_with_base(self):
        with pytest.raises(GeoMxPipelineError):
            raise ModelFitError("singular")

    def test_configuration_missing_field(self):
        exc = ConfigurationError("min_nuclei")
        assert "min_nuclei" in str(exc)
        assert "Missing" in str(exc)
        assert exc.field == "min_nuclei"
        assert exc.reason is None

    def test_configuration_invalid_field(self):
        exc = ConfigurationError("percent_aligned", "expected a number")
        assert "percent_aligned" in str(exc)
        assert "expected a number" in str(exc)

    def test_empty_result_message(self):
        exc = EmptyResultError("Segment QC", "segment")
        assert "Segment QC" in str(exc)
        assert exc.stage == "Segment QC"
        assert exc.entity == "segment"
