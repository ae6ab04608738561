"""
GSEA input export

Reformats TCGA data into the Broad GSEA desktop inputs:
- GCT 1.2 expression file (genes x samples)
- categorical CLS phenotype file
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

import pandas as pd

from ..agents.agent1_cohort import clean_attribute
from ..stats.normalization import normalize_expression

logger = logging.getLogger(__name__)


def write_gct(matrix: pd.DataFrame, path: Path, descriptions: Optional[pd.Series] = None) -> Path:
    """
    Write a genes x samples matrix as GCT 1.2.

    Args:
        matrix: genes x samples, gene identifiers as index
        path: output .gct file
        descriptions: optional per-gene description (defaults to "na")
    """
    path = Path(path)
    body = matrix.copy()
    body.insert(0, "Description",
                descriptions.reindex(body.index).fillna("na") if descriptions is not None else "na")
    body.insert(0, "NAME", body.index.astype(str))

    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write("#1.2\n")
        f.write(f"{matrix.shape[0]}\t{matrix.shape[1]}\n")
        body.to_csv(f, sep='\t', index=False, float_format="%.6g")

    logger.info(f"Saved {path.name}: {matrix.shape[0]} genes x {matrix.shape[1]} samples")
    return path


def write_cls(labels: Sequence[str], path: Path) -> Path:
    """
    Write a categorical CLS file.

    Class names are listed in order of first appearance; labels must not
    contain whitespace.
    """
    path = Path(path)
    labels = [str(label) for label in labels]
    if any(len(label.split()) != 1 for label in labels):
        raise ValueError("CLS labels must be non-empty and contain no whitespace")

    classes = list(dict.fromkeys(labels))

    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(f"{len(labels)} {len(classes)} 1\n")
        f.write("# " + " ".join(classes) + "\n")
        f.write(" ".join(labels) + "\n")

    logger.info(f"Saved {path.name}: {len(labels)} samples, classes {classes}")
    return path


def _label(value: str) -> str:
    return "_".join(str(value).split())


def export_for_gsea(
    expression: pd.DataFrame,
    clinical: pd.DataFrame,
    attribute: str,
    group_a: str,
    group_b: str,
    out_dir: Path,
    data_type: str = "RNASeq",
    min_count: int = 10,
    prefix: Optional[str] = None
) -> Dict[str, Path]:
    """
    Write GCT + CLS files comparing two subgroups of a clinical attribute.

    Args:
        expression: genes x samples
        clinical: one row per sample with a "sample_id" column
        attribute: clinical column used to split samples
        group_a, group_b: the two attribute values to export (A listed first)
        out_dir: output directory

    Returns:
        {"gct": path, "cls": path}
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    clinical = clinical[clinical["sample_id"].isin(expression.columns)]
    labels = clean_attribute(clinical, attribute)

    samples_a = sorted(labels[labels.str.lower() == group_a.lower()].index)
    samples_b = sorted(labels[labels.str.lower() == group_b.lower()].index)
    if not samples_a or not samples_b:
        raise ValueError(f"No samples for '{group_a}' ({len(samples_a)}) or "
                         f"'{group_b}' ({len(samples_b)}) in '{attribute}'")

    samples = samples_a + samples_b
    normalized = normalize_expression(expression[samples], data_type=data_type, min_count=min_count)
    normalized = normalized.dropna()

    prefix = prefix or f"{_label(attribute)}_{_label(group_a)}_vs_{_label(group_b)}"
    gct = write_gct(normalized, out_dir / f"{prefix}.gct")
    cls = write_cls([_label(group_a)] * len(samples_a) + [_label(group_b)] * len(samples_b),
                    out_dir / f"{prefix}.cls")

    return {"gct": gct, "cls": cls}
