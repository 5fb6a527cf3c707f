"""
Data loading and initial validation for the GeoMx processing pipeline.
"""

import json
from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

from geomx_ir.domain.exceptions import ConfigurationError, DataValidationError
from geomx_ir.domain.models import (
    PROBE_LEVEL,
    AnnotationColumns,
    ExpressionSet,
    ProcessingConfig,
)
from geomx_ir.infrastructure.logger import Logger

PROBE_COLUMNS = ["ProbeID", "TargetName", "Module", "CodeClass"]


class GeoMxDataLoader:
    """Responsible for loading and initial validation of GeoMx tables"""

    def __init__(self, logger: Logger = None):
        self.logger = logger if logger is not None else Logger()

    def _read_table(self, file_path: str) -> pd.DataFrame:
        """Read a CSV or TSV file, choosing the delimiter by suffix"""
        suffix = Path(file_path).suffix.lower()
        try:
            if suffix in (".tsv", ".txt"):
                table = pd.read_csv(file_path, sep="\t")
            elif suffix == ".csv":
                table = pd.read_csv(file_path)
            else:
                table = pd.read_csv(file_path, sep=None, engine="python")
        except FileNotFoundError:
            self.logger.log_error(FileNotFoundError(f"File not found: {file_path}"), "Data loading")
            raise
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            self.logger.log_error(e, f"Reading {file_path}")
            raise DataValidationError(f"Invalid file format or corrupted data: {file_path}") from e
        return table

    def load_probe_counts(self, file_path: str) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Load the probe count table.

        Args:
            file_path: CSV/TSV with ProbeID, TargetName, Module, CodeClass and
                one numeric column per segment

        Returns:
            Tuple of (counts probes x segments, probe annotation)

        Raises:
            DataValidationError: on missing columns, duplicate probes or
                non-numeric / negative counts
        """
        table = self._read_table(file_path)
        missing = [col for col in PROBE_COLUMNS if col not in table.columns]
        if missing:
            raise DataValidationError(f"Probe count table is missing columns: {missing}")

        table["ProbeID"] = table["ProbeID"].astype(str)
        if table["ProbeID"].duplicated().any():
            dupes = table.loc[table["ProbeID"].duplicated(), "ProbeID"].tolist()[:10]
            raise DataValidationError(f"Duplicate probe identifiers: {dupes}")
        table = table.set_index("ProbeID")

        feature_info = table[PROBE_COLUMNS[1:]].astype(str)
        segment_columns = [col for col in table.columns if col not in PROBE_COLUMNS]
        if not segment_columns:
            raise DataValidationError("Probe count table has no segment columns")

        counts = table[segment_columns].apply(pd.to_numeric, errors="coerce")
        if counts.isna().to_numpy().any():
            bad = counts.columns[counts.isna().any()].tolist()[:10]
            raise DataValidationError(f"Non-numeric or missing counts in segments: {bad}")
        if (counts < 0).to_numpy().any():
            raise DataValidationError("Counts must be non-negative")
        counts = counts.astype(float)
        counts.columns = counts.columns.astype(str)

        self.logger.log_matrix_shape("Loaded probe counts", counts.shape)
        self.logger.log_counts(
            "Probe classes", feature_info["CodeClass"].value_counts().to_dict()
        )
        self.logger.log_success(f"Successfully loaded probe counts from {file_path}")
        return counts, feature_info

    def load_annotation(self, file_path: str, columns: AnnotationColumns) -> pd.DataFrame:
        """
        Load segment annotation and rename mapped columns to canonical names.

        Args:
            file_path: Annotation CSV/TSV, one row per segment
            columns: Mapping from canonical attributes to file columns

        Returns:
            pd.DataFrame: indexed by segment id, canonical columns plus any
            extra annotation columns

        Raises:
            ConfigurationError: if a mapped column is absent, naming the field
        """
        table = self._read_table(file_path)
        for field_name, column in vars(columns).items():
            if column not in table.columns:
                raise ConfigurationError(
                    f"annotation_columns.{field_name}",
                    f"column '{column}' not found in {file_path}",
                )

        table[columns.segment_id] = table[columns.segment_id].astype(str)
        if table[columns.segment_id].duplicated().any():
            dupes = table.loc[table[columns.segment_id].duplicated(), columns.segment_id]
            raise DataValidationError(f"Duplicate segment identifiers: {dupes.tolist()[:10]}")

        mapping = columns.canonical_mapping()
        # Unmapped columns that already use a canonical name would collide
        clashing = [
            col for col in table.columns
            if col in mapping.values() and col not in mapping and col != columns.segment_id
        ]
        annotation = table.drop(columns=clashing).rename(columns=mapping)
        annotation = annotation.set_index(columns.segment_id)
        annotation.index.name = "SegmentID"

        self.logger.log_step("Annotation", f"{len(annotation)} segments from {file_path}")
        return annotation

    def build_expression_set(
        self, counts: pd.DataFrame, feature_info: pd.DataFrame, annotation: pd.DataFrame
    ) -> ExpressionSet:
        """
        Join counts with segment annotation.

        Every count column needs an annotation row; annotation rows without
        counts are dropped with a warning.
        """
        missing = [seg for seg in counts.columns if seg not in annotation.index]
        if missing:
            raise DataValidationError(f"Segments without annotation: {missing[:10]}")

        unused = [seg for seg in annotation.index if seg not in counts.columns]
        if unused:
            self.logger.log_warning(f"{len(unused)} annotated segments have no counts; ignored")

        return ExpressionSet(
            counts=counts,
            feature_info=feature_info,
            segment_info=annotation.loc[counts.columns],
            feature_level=PROBE_LEVEL,
        )

    def load_expression_set(self, config: ProcessingConfig) -> ExpressionSet:
        """Load probe counts and annotation into one ExpressionSet"""
        counts, feature_info = self.load_probe_counts(config.probe_counts_file)
        annotation = self.load_annotation(config.annotation_file, config.annotation_columns)
        return self.build_expression_set(counts, feature_info, annotation)

    def load_signature(self, file_path: str) -> pd.DataFrame:
        """
        Load a genes x cell types signature matrix (first column = gene ids).

        Raises:
            DataValidationError: on duplicate genes or non-numeric entries
        """
        table = self._read_table(file_path)
        table = table.set_index(table.columns[0])
        table.index = table.index.astype(str)
        if table.index.has_duplicates:
            raise DataValidationError("Signature matrix has duplicate gene identifiers")

        signature = table.apply(pd.to_numeric, errors="coerce")
        if signature.isna().to_numpy().any():
            raise DataValidationError("Signature matrix contains missing or non-numeric values")

        self.logger.log_matrix_shape("Loaded signature matrix", signature.shape)
        return signature.astype(float)

    def load_cell_type_groups(self, file_path: str) -> Dict[str, List[str]]:
        """Load ``{collapsed name: [cell types]}`` from JSON"""
        try:
            with open(file_path) as f:
                groups = json.load(f)
        except json.JSONDecodeError as e:
            self.logger.log_error(e, f"Reading {file_path}")
            raise DataValidationError(f"Invalid JSON in {file_path}") from e

        valid = isinstance(groups, dict) and all(
            isinstance(members, list) and all(isinstance(m, str) for m in members)
            for members in groups.values()
        )
        if not valid:
            raise DataValidationError(
                "Cell-type groups must map each collapsed name to a list of cell types"
            )

        self.logger.log_step("Cell type groups", f"{len(groups)} collapsed types from {file_path}")
        return {str(name): list(members) for name, members in groups.items()}
