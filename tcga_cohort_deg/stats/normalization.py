"""
Variance-stabilizing transforms applied before linear-model fitting.

- RNASeq raw counts: low-count filter, then log2 counts-per-million
- CNV copy-number: linear rescale to [0, 1]
- log: already log-scale, passed through
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# log-CPM prior count (limma voom / edgeR cpm default)
PRIOR_COUNT = 0.5


def is_raw_counts(matrix: pd.DataFrame) -> bool:
    """True if the matrix looks like raw counts (non-negative integers, max > 50)."""
    values = matrix.to_numpy(dtype=float)
    values = values[~np.isnan(values)]
    if values.size == 0:
        return False
    if (values < 0).any():
        return False
    if not np.allclose(values, np.round(values)):
        return False
    return bool(values.max() > 50)


def filter_low_counts(counts: pd.DataFrame, min_count: int = 10) -> pd.DataFrame:
    """Drop genes whose total count across samples is below min_count."""
    keep = counts.sum(axis=1) >= min_count
    logger.debug(f"Low-count filter (min_count={min_count}): {keep.sum()}/{len(keep)} genes kept")
    return counts.loc[keep]


def log_cpm(counts: pd.DataFrame, prior_count: float = PRIOR_COUNT) -> pd.DataFrame:
    """log2 counts-per-million, voom style: log2((count + 0.5) / (libsize + 1) * 1e6)."""
    lib_size = counts.sum(axis=0)
    return np.log2((counts + prior_count).div(lib_size + 1.0, axis=1) * 1e6)


def rescale_unit_range(matrix: pd.DataFrame) -> pd.DataFrame:
    """Linear rescale of the whole matrix to [0, 1]; a constant matrix maps to 0."""
    lo = np.nanmin(matrix.to_numpy(dtype=float))
    hi = np.nanmax(matrix.to_numpy(dtype=float))
    if hi == lo:
        return matrix * 0.0
    return (matrix - lo) / (hi - lo)


def normalize_expression(
    matrix: pd.DataFrame,
    data_type: str = "RNASeq",
    min_count: int = 10
) -> pd.DataFrame:
    """
    Apply the transform appropriate to the data type.

    Args:
        matrix: genes x samples
        data_type: "RNASeq", "CNV" or "log"
        min_count: total-count threshold for the RNASeq low-count filter

    Returns:
        Transformed genes x samples matrix
    """
    if data_type == "RNASeq":
        if is_raw_counts(matrix):
            logger.info("Raw counts detected - applying log2-CPM")
            return log_cpm(filter_low_counts(matrix, min_count))
        logger.info("Expression already log-scale - no transform applied")
        return matrix.astype(float)

    if data_type == "CNV":
        logger.info("Copy-number data - rescaling to [0, 1]")
        return rescale_unit_range(matrix.astype(float))

    if data_type == "log":
        return matrix.astype(float)

    raise ValueError(f"Unknown data type: {data_type}")
