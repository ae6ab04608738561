"""Statistical routines: normalization and limma-style moderated t-tests."""

from .limma import (
    LinearModelFit,
    lm_fit,
    contrasts_fit,
    ebayes,
    squeeze_var,
    top_table,
    two_group_limma,
    split_by_direction,
)
from .normalization import normalize_expression, is_raw_counts

__all__ = [
    "LinearModelFit",
    "lm_fit",
    "contrasts_fit",
    "ebayes",
    "squeeze_var",
    "top_table",
    "two_group_limma",
    "split_by_direction",
    "normalize_expression",
    "is_raw_counts",
]
