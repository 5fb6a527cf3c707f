"""
Command line entry point for the GeoMx liver I/R pipeline.

Parses arguments into a ProcessingConfig, runs GeoMxProcessingService and
maps the outcome to an exit status: 0 on success, 1 on any pipeline error
and 130 when interrupted.
"""

import sys
from typing import Optional, Sequence

from geomx_ir.application.geomx_processing_service import GeoMxProcessingService
from geomx_ir.infrastructure.argument_parser import ArgumentParser
from geomx_ir.infrastructure.logger import Logger


def main(argv: Optional[Sequence[str]] = None) -> int:
    logger = Logger()

    try:
        logger.log_step("Starting", "GeoMx liver I/R pipeline")
        config = ArgumentParser(logger).parse_arguments(argv)

        # File output only starts once --log_file has been parsed
        if config.log_file:
            logger = Logger(config.log_file)

        result = GeoMxProcessingService(config, logger).process()

        failed_fits = {
            name: de.n_failed for name, de in result.differential_expression.items()
        }
        logger.log_counts("Failed model fits", failed_fits)
        logger.log_success(f"Outputs written to {config.out_dir}")
        print("✅ Processing completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.log_warning("Processing interrupted by user")
        print("⚠️ Processing interrupted by user")
        return 130

    except Exception as e:
        logger.log_error(e, "GeoMx pipeline")
        print(f"❌ Processing failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
