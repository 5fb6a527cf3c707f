"""Shared test fixtures for the GeoMx processing pipeline."""

import json

import numpy as np
import pandas as pd
import pytest

from geomx_ir.domain.models import (
    PROBE_LEVEL,
    AnnotationColumns,
    ExpressionSet,
)

MODULE = "Mm_R_NGS_WTA_v1.0"
NEGATIVE_TARGET = "NegProbe-WTX"
MULTI_PROBE_TARGETS = ["Alb", "Cyp2e1", "Cyp2f2"]
SINGLE_PROBE_TARGETS = [
    "Glul", "Oat", "Hamp", "Saa1", "Saa2", "Lcn2",
    "Mt1", "Mt2", "Hmox1", "Cxcl1", "Apoa1", "Ttr",
]
PROBE_FACTORS = [1.0, 0.9, 1.1, 1.05, 0.95]


def canonical_segment_info(segments, **columns) -> pd.DataFrame:
    """Canonical segment annotation whose QC metrics all pass the defaults."""
    n = len(segments)
    info = pd.DataFrame(
        {
            "slide": [f"slide{i // 4 + 1}" for i in range(n)],
            "region": ["CV" if i % 2 == 0 else "PV" for i in range(n)],
            "class": ["Sham" if i < n // 2 else "IR" for i in range(n)],
            "Raw": 20000.0,
            "Trimmed": 19000.0,
            "Stitched": 18500.0,
            "Aligned": 18000.0,
            "DeduplicatedReads": 4000.0,
            "NTC": 15.0,
            "nuclei": 150.0,
            "area": 12000.0,
        },
        index=pd.Index(list(segments)),
    )
    for name, values in columns.items():
        info[name] = values
    return info


def expression_set_from(
    counts,
    targets=None,
    code_classes=None,
    segment_info=None,
    level=PROBE_LEVEL,
    layers=None,
) -> ExpressionSet:
    """Build an ExpressionSet from a counts frame with one module."""
    counts = counts.astype(float)
    features = counts.index
    info = pd.DataFrame(
        {
            "Module": MODULE,
            "CodeClass": list(code_classes) if code_classes is not None else "Endogenous",
        },
        index=features,
    )
    if level == PROBE_LEVEL:
        info["TargetName"] = list(targets) if targets is not None else list(features)
    if segment_info is None:
        segment_info = canonical_segment_info(counts.columns)
    return ExpressionSet(
        counts=counts,
        feature_info=info,
        segment_info=segment_info,
        layers=dict(layers or {}),
        feature_level=level,
    )


def annotation_table(n_slides: int = 4, per_slide: int = 4) -> pd.DataFrame:
    """Annotation file contents using the default source column names."""
    rows = []
    for s in range(n_slides):
        for j in range(per_slide):
            rows.append(
                {
                    "SampleID": f"S{len(rows) + 1:02d}",
                    "slide name": f"slide{s + 1}",
                    "region": "CV" if j % 2 == 0 else "PV",
                    "class": "Sham" if s < n_slides // 2 else "IR",
                    "Raw": 20000,
                    "Trimmed": 19000,
                    "Stitched": 18500,
                    "Aligned": 18000,
                    "DeduplicatedReads": 4000,
                    "NTC": 15,
                    "nuclei": 150,
                    "area": 12000,
                }
            )
    return pd.DataFrame(rows)


def probe_count_table(segment_ids, seed: int = 11) -> pd.DataFrame:
    """Probe count file contents: multi-probe targets, single-probe targets, negatives."""
    rng = np.random.default_rng(seed)
    scale = np.linspace(0.8, 1.2, len(segment_ids))
    rows = []

    def add(target, code_class, expected):
        values = rng.poisson(expected)
        rows.append(
            {
                "ProbeID": f"RTS{len(rows) + 1:05d}",
                "TargetName": target,
                "Module": MODULE,
                "CodeClass": code_class,
                **dict(zip(segment_ids, values)),
            }
        )

    for t, target in enumerate(MULTI_PROBE_TARGETS + SINGLE_PROBE_TARGETS):
        base = 80 + 40 * t
        factors = PROBE_FACTORS if target in MULTI_PROBE_TARGETS else [1.0]
        for factor in factors:
            add(target, "Endogenous", base * factor * scale)
    for _ in range(5):
        add(NEGATIVE_TARGET, "Negative", np.full(len(segment_ids), 6.0))
    return pd.DataFrame(rows)


def signature_table(genes, cell_types=("Hepatocyte", "Kupffer", "Endothelial", "Stellate")):
    """Genes x cell types reference profiles with distinct positive columns."""
    rng = np.random.default_rng(5)
    values = rng.uniform(0.5, 20.0, size=(len(genes), len(cell_types)))
    return pd.DataFrame(values, index=pd.Index(list(genes), name="Gene"), columns=list(cell_types))


@pytest.fixture
def make_set():
    """Factory for small in-memory expression sets."""
    return expression_set_from


@pytest.fixture
def make_segment_info():
    """Factory for canonical segment annotation."""
    return canonical_segment_info


@pytest.fixture
def annotation_columns():
    return AnnotationColumns()


@pytest.fixture
def probe_set():
    """Probe-level set matching the synthetic input files, already shifted."""
    annotation = annotation_table()
    segments = list(annotation["SampleID"])
    table = probe_count_table(segments).set_index("ProbeID")
    counts = table[segments]
    info = table[["TargetName", "Module", "CodeClass"]]
    segment_info = (
        annotation.rename(columns=AnnotationColumns().canonical_mapping())
        .set_index("SampleID")
    )
    return ExpressionSet(
        counts=counts.astype(float),
        feature_info=info,
        segment_info=segment_info,
        feature_level=PROBE_LEVEL,
    ).shift_counts_one()


@pytest.fixture
def geomx_files(tmp_path):
    """Synthetic input files on disk plus an output directory."""
    annotation = annotation_table()
    segments = list(annotation["SampleID"])
    probes = probe_count_table(segments)

    paths = {
        "probe_counts": tmp_path / "probe_counts.csv",
        "annotation": tmp_path / "annotation.tsv",
        "signature": tmp_path / "signature.csv",
        "cell_type_groups": tmp_path / "cell_type_groups.json",
        "out_dir": tmp_path / "results",
    }
    probes.to_csv(paths["probe_counts"], index=False)
    annotation.to_csv(paths["annotation"], sep="\t", index=False)
    signature_table(MULTI_PROBE_TARGETS + SINGLE_PROBE_TARGETS).to_csv(paths["signature"])
    with open(paths["cell_type_groups"], "w") as f:
        json.dump({"NonParenchymal": ["Kupffer", "Endothelial", "Stellate"]}, f)
    return {name: str(path) for name, path in paths.items()}
