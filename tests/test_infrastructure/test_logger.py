"""Tests for geomx_ir.infrastructure.logger."""

from geomx_ir.infrastructure.logger import Logger


class TestLogger:
    def test_file_records_carry_logger_name(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        logger = Logger(str(log_file))
        logger.log_success("Segment QC done")
        for handler in logger.logger.handlers:
            handler.flush()

        line = log_file.read_text().strip().splitlines()[-1]
        assert " - geomx_ir - INFO - ✅ Segment QC done" in line

    def test_recreating_does_not_duplicate_handlers(self, tmp_path):
        Logger()
        logger = Logger(str(tmp_path / "run.log"))
        assert len(logger.logger.handlers) == 2

    def test_filter_message(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = Logger(str(log_file))
        logger.log_filter("Segment QC", 14, 16, "segment")
        for handler in logger.logger.handlers:
            handler.flush()
        assert "Segment QC: kept 14/16 segments, removed 2" in log_file.read_text()
