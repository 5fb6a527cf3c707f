"""Tests for geomx_ir.infrastructure.config_loader."""

import json

import pytest

from geomx_ir.domain.exceptions import ConfigurationError
from geomx_ir.domain.models import DEDesign, ProcessingConfig
from geomx_ir.infrastructure.config_loader import ConfigLoader


@pytest.fixture
def base_config(tmp_path):
    return ProcessingConfig(
        out_dir=str(tmp_path / "out"),
        probe_counts_file="probes.csv",
        annotation_file="annotation.csv",
    )


class TestApply:
    def test_overrides_sections(self, base_config):
        mapping = {
            "segment_qc": {"min_nuclei": 50, "percent_aligned": 60.5},
            "detection": {"whitelist": ["Cyp2e1", "Glul"]},
            "annotation_columns": {"slide": "Slide Name"},
            "use_da_logic": False,
        }
        config = ConfigLoader().apply(base_config, mapping)
        assert config.segment_qc.min_nuclei == 50
        assert config.segment_qc.percent_aligned == 60.5
        assert config.segment_qc.min_area == 1000
        assert config.detection.whitelist == ("Cyp2e1", "Glul")
        assert config.annotation_columns.slide == "Slide Name"
        assert not config.use_da_logic
        # base config untouched
        assert base_config.segment_qc.min_nuclei == 20

    def test_de_designs(self, base_config):
        mapping = {"de_designs": [
            {"name": "class_within_region"},
            {"name": "region_within_class", "test_variable": "region",
             "stratum_variable": "class", "random_slope": True},
        ]}
        config = ConfigLoader().apply(base_config, mapping)
        assert config.de_designs[0] == DEDesign()
        assert config.de_designs[1].random_slope

    def test_optional_field_accepts_null(self, base_config):
        config = ConfigLoader().apply(base_config, {"deconvolution": {"epsilon": None}})
        assert config.deconvolution.epsilon is None


class TestValidation:
    def test_unknown_key(self, base_config):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().apply(base_config, {"segment_qc": {"min_cells": 3}})
        assert exc_info.value.field == "segment_qc.min_cells"

    def test_unknown_section(self, base_config):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().apply(base_config, {"plots": {}})
        assert exc_info.value.field == "plots"

    def test_null_threshold(self, base_config):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().apply(base_config, {"probe_qc": {"min_probe_ratio": None}})
        assert exc_info.value.field == "probe_qc.min_probe_ratio"
        assert "Missing" in str(exc_info.value)

    @pytest.mark.parametrize("value", ["0.1", True, [0.1]])
    def test_non_numeric_threshold(self, base_config, value):
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigLoader().apply(base_config, {"probe_qc": {"min_probe_ratio": value}})
        assert exc_info.value.field == "probe_qc.min_probe_ratio"

    def test_empty_design_list(self, base_config):
        with pytest.raises(ConfigurationError):
            ConfigLoader().apply(base_config, {"de_designs": []})


class TestLoadFile:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"normalization": {"quantile": 0.9}}))
        assert ConfigLoader().load_file(str(path)) == {"normalization": {"quantile": 0.9}}

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_file(str(tmp_path / "absent.json"))
