"""Tests for geomx_ir.infrastructure.argument_parser."""

import json
import os

import pytest

from geomx_ir.domain.exceptions import ConfigurationError
from geomx_ir.infrastructure.argument_parser import ArgumentParser


def base_argv(files):
    return [
        "-o", files["out_dir"],
        "-p", files["probe_counts"],
        "-a", files["annotation"],
    ]


class TestParseArguments:
    def test_minimal(self, geomx_files):
        config = ArgumentParser().parse_arguments(base_argv(geomx_files))
        assert config.probe_counts_file == geomx_files["probe_counts"]
        assert config.signature_file is None
        assert config.use_da_logic
        assert [design.name for design in config.de_designs] == ["class_within_region"]

    def test_whitelist_and_flags(self, geomx_files):
        argv = base_argv(geomx_files) + [
            "--whitelist", "Cyp2e1, Glul",
            "--add_one_to_all",
            "--within_slide",
            "--de_layer", "neg_norm",
        ]
        config = ArgumentParser().parse_arguments(argv)
        assert config.detection.whitelist == ("Cyp2e1", "Glul")
        assert not config.use_da_logic
        assert [design.name for design in config.de_designs] == [
            "class_within_region", "region_within_class",
        ]
        assert all(design.layer == "neg_norm" for design in config.de_designs)
        assert config.de_designs[1].random_slope

    def test_config_file(self, geomx_files, tmp_path):
        config_path = tmp_path / "thresholds.json"
        config_path.write_text(json.dumps({"segment_qc": {"min_nuclei": 5}}))
        argv = base_argv(geomx_files) + ["-c", str(config_path)]
        config = ArgumentParser().parse_arguments(argv)
        assert config.segment_qc.min_nuclei == 5

    def test_missing_required_flag(self, geomx_files):
        with pytest.raises(SystemExit):
            ArgumentParser().parse_arguments(["-o", geomx_files["out_dir"]])


class TestValidateConfig:
    def test_missing_input_file(self, geomx_files, tmp_path):
        argv = base_argv(geomx_files)
        argv[3] = str(tmp_path / "absent.csv")
        with pytest.raises(ConfigurationError) as exc_info:
            ArgumentParser().parse_arguments(argv)
        assert exc_info.value.field == "probe_counts"

    def test_groups_require_signature(self, geomx_files):
        argv = base_argv(geomx_files) + ["-g", geomx_files["cell_type_groups"]]
        with pytest.raises(ConfigurationError) as exc_info:
            ArgumentParser().parse_arguments(argv)
        assert exc_info.value.field == "cell_type_groups"

    def test_rate_out_of_range(self, geomx_files, tmp_path):
        config_path = tmp_path / "thresholds.json"
        config_path.write_text(json.dumps({"detection": {"gene_detection_rate": 10}}))
        argv = base_argv(geomx_files) + ["-c", str(config_path)]
        with pytest.raises(ConfigurationError) as exc_info:
            ArgumentParser().parse_arguments(argv)
        assert exc_info.value.field == "detection.gene_detection_rate"

    def test_within_slide_clashes_with_configured_design(self, geomx_files, tmp_path):
        config_path = tmp_path / "designs.json"
        config_path.write_text(json.dumps({
            "de_designs": [
                {"name": "region_within_class", "test_variable": "region",
                 "stratum_variable": "class"},
            ]
        }))
        argv = base_argv(geomx_files) + ["-c", str(config_path), "--within_slide"]
        with pytest.raises(ConfigurationError) as exc_info:
            ArgumentParser().parse_arguments(argv)
        assert exc_info.value.field == "de_designs"
        assert "region_within_class" in str(exc_info.value)

    def test_creates_output_directory(self, geomx_files):
        ArgumentParser().parse_arguments(base_argv(geomx_files))
        assert os.path.isdir(geomx_files["out_dir"])
