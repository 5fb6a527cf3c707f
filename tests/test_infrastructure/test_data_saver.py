"""Tests for geomx_ir.infrastructure.data.data_saver."""

import pandas as pd
import pytest

from geomx_ir.infrastructure.data.data_saver import GeoMxDataSaver


class TestSaveTable:
    def test_creates_directory(self, tmp_path):
        path = tmp_path / "nested" / "table.csv"
        table = pd.DataFrame({"Count": [1, 2]}, index=["a", "b"])
        GeoMxDataSaver().save_table(table, str(path))
        restored = pd.read_csv(path, index_col=0)
        assert restored["Count"].tolist() == [1, 2]
        assert restored.index.tolist() == ["a", "b"]

    def test_without_index(self, tmp_path):
        path = tmp_path / "table.csv"
        GeoMxDataSaver().save_table(pd.DataFrame({"Gene": ["Alb"]}), str(path), index=False)
        assert pd.read_csv(path).columns.tolist() == ["Gene"]

    def test_write_failure_reraised(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(OSError):
            GeoMxDataSaver().save_table(pd.DataFrame({"a": [1]}), str(blocker / "table.csv"))
