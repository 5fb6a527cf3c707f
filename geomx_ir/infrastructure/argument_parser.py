"""
Command line argument parsing and validation for the GeoMx processing pipeline.
"""

import argparse
import os
from dataclasses import replace
from typing import List, Optional, Sequence

from geomx_ir.domain.exceptions import ConfigurationError
from geomx_ir.domain.models import DEDesign, ProcessingConfig
from geomx_ir.infrastructure.config_loader import ConfigLoader
from geomx_ir.infrastructure.logger import Logger


class ArgumentParser:
    """Command line argument parsing and validation"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger if logger is not None else Logger()
        self.config_loader = ConfigLoader(self.logger)
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create and configure the argument parser"""
        parser = argparse.ArgumentParser(
            description="QC, normalize and analyze GeoMx DSP liver I/R counts"
        )

        # Required arguments
        parser.add_argument(
            "-o", "--out_dir",
            type=str,
            required=True,
            help="Output directory for saving results"
        )
        parser.add_argument(
            "-p", "--probe_counts",
            type=str,
            required=True,
            help="Probe count table (ProbeID, TargetName, Module, CodeClass, one column per segment)"
        )
        parser.add_argument(
            "-a", "--annotation",
            type=str,
            required=True,
            help="Segment annotation table (sample id, slide, region, class, QC metrics)"
        )

        # Optional arguments
        parser.add_argument(
            "-c", "--config",
            type=str,
            help="JSON file overriding thresholds (segment_qc, probe_qc, detection, normalization, de_designs, deconvolution, annotation_columns)"
        )
        parser.add_argument(
            "-s", "--signature",
            type=str,
            help="Cell-type signature matrix (genes x cell types). Enables deconvolution."
        )
        parser.add_argument(
            "-g", "--cell_type_groups",
            type=str,
            help="JSON file mapping collapsed cell-type names to lists of signature cell types"
        )
        parser.add_argument(
            "-w", "--whitelist",
            type=str,
            help="Comma-separated genes always kept by the detection filter (e.g. 'Cyp2e1,Cyp2f2')"
        )
        parser.add_argument(
            "--de_layer",
            type=str,
            default=None,
            help="Normalized layer used by differential expression (default: q_norm)"
        )
        parser.add_argument(
            "--within_slide",
            action="store_true",
            help="Also compare zones within each disease class using a per-slide random slope."
        )
        parser.add_argument(
            "--add_one_to_all",
            action="store_true",
            help="Shift counts by adding one everywhere instead of replacing zeros with one."
        )
        parser.add_argument(
            "--log_file",
            type=str,
            help="Optional log file path"
        )

        return parser

    def parse_arguments(self, argv: Optional[Sequence[str]] = None) -> ProcessingConfig:
        """Parse command line arguments and return ProcessingConfig"""
        args = self.parser.parse_args(argv)

        config = ProcessingConfig(
            out_dir=args.out_dir,
            probe_counts_file=args.probe_counts,
            annotation_file=args.annotation,
            signature_file=args.signature,
            cell_type_groups_file=args.cell_type_groups,
            log_file=args.log_file,
            use_da_logic=not args.add_one_to_all,
        )

        if args.config:
            config = self.config_loader.apply(config, self.config_loader.load_file(args.config))

        whitelist = self._parse_whitelist(args.whitelist)
        if whitelist:
            config = replace(
                config,
                detection=replace(
                    config.detection,
                    whitelist=tuple(config.detection.whitelist) + tuple(whitelist),
                ),
            )

        if args.de_layer:
            config = replace(
                config,
                de_designs=[replace(design, layer=args.de_layer) for design in config.de_designs],
            )

        if args.within_slide:
            config = replace(
                config,
                de_designs=list(config.de_designs)
                + [
                    DEDesign(
                        name="region_within_class",
                        test_variable="region",
                        stratum_variable="class",
                        random_slope=True,
                        layer=args.de_layer or "q_norm",
                    )
                ],
            )

        self.validate_config(config)
        return config

    @staticmethod
    def _parse_whitelist(value: Optional[str]) -> List[str]:
        """Split a comma-separated gene list, dropping blanks and repeats"""
        if not value:
            return []
        genes = (gene.strip().strip("'\"") for gene in value.split(","))
        return list(dict.fromkeys(gene for gene in genes if gene))

    def validate_config(self, config: ProcessingConfig) -> None:
        """
        Validate the processing configuration before any data is touched.

        Raises:
            ConfigurationError: naming the first offending field
        """
        try:
            os.makedirs(config.out_dir, exist_ok=True)

            required_files = {
                "probe_counts": config.probe_counts_file,
                "annotation": config.annotation_file,
            }
            optional_files = {
                "signature": config.signature_file,
                "cell_type_groups": config.cell_type_groups_file,
            }
            for field_name, path in required_files.items():
                if not path:
                    raise ConfigurationError(field_name)
                if not os.path.exists(path):
                    raise ConfigurationError(field_name, f"file not found: {path}")
            for field_name, path in optional_files.items():
                if path and not os.path.exists(path):
                    raise ConfigurationError(field_name, f"file not found: {path}")

            if config.cell_type_groups_file and not config.signature_file:
                raise ConfigurationError(
                    "cell_type_groups", "requires a signature matrix (--signature)"
                )

            for field_name in ("segment_detection_rate", "gene_detection_rate"):
                rate = getattr(config.detection, field_name)
                if not 0 <= rate <= 1:
                    raise ConfigurationError(
                        f"detection.{field_name}", f"must be within [0, 1], got {rate}"
                    )

            names = [design.name for design in config.de_designs]
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise ConfigurationError(
                    "de_designs", f"duplicate design names: {', '.join(duplicates)}"
                )

            if config.probe_qc.min_probe_ratio < 0:
                self.logger.log_warning(
                    f"Minimum probe ratio {config.probe_qc.min_probe_ratio} is negative"
                )
            if not 0 <= config.probe_qc.percent_fail_grubbs <= 100:
                self.logger.log_warning(
                    f"percent_fail_grubbs {config.probe_qc.percent_fail_grubbs} is outside [0, 100]"
                )

            self.logger.log_success("Configuration validation passed")

        except ConfigurationError as e:
            self.logger.log_error(e, "Configuration validation")
            raise
