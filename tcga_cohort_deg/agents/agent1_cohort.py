"""
Agent 1: Cohort Partition

Splits samples by a clinical attribute (e.g. race) and enumerates the pairs of
subgroups large enough to compare.

Input:
- expression_matrix.csv: From Agent 0 (only its sample columns are used)
- clinical_data.csv: From Agent 0

Output:
- cohort_groups.csv: sample_id -> group
- group_sizes.csv: all subgroup sizes, with a qualifying flag
- comparisons.json: ordered list of pairwise comparisons
- meta_agent1_cohort.json: Execution metadata
"""

import re
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import DEFAULT_CONFIG
from ..utils.base_agent import BaseAgent


def clean_attribute(
    clinical: pd.DataFrame,
    attribute: str,
    excluded_values: Iterable[str] = (),
    sample_column: str = "sample_id"
) -> pd.Series:
    """Attribute value per sample, without missing or excluded values."""
    if attribute not in clinical.columns:
        raise ValueError(f"Clinical attribute '{attribute}' not found. "
                         f"Available: {sorted(clinical.columns)}")

    labels = clinical.set_index(sample_column)[attribute]
    labels = labels.dropna().astype(str).str.strip()

    excluded = {str(v).strip().lower() for v in excluded_values}
    keep = ~labels.str.lower().isin(excluded) & (labels != "")
    return labels[keep]


def qualifying_groups(labels: pd.Series, min_group_size: int) -> List[str]:
    """Subgroups with at least min_group_size samples, sorted by label."""
    sizes = labels.value_counts()
    return sorted(sizes[sizes >= min_group_size].index)


def enumerate_pairs(labels: pd.Series, min_group_size: int) -> List[Tuple[str, str]]:
    """All unordered pairs of qualifying subgroups; group A sorts first."""
    return list(combinations(qualifying_groups(labels, min_group_size), 2))


def downsample(samples: Sequence[str], max_size: Optional[int], seed: int) -> List[str]:
    """Deterministic random subsample of at most max_size samples, in original order."""
    samples = list(samples)
    if max_size is None or len(samples) <= max_size:
        return samples

    rng = np.random.default_rng(seed)
    chosen = rng.choice(len(samples), size=max_size, replace=False)
    return [samples[i] for i in sorted(chosen)]


def comparison_id(index: int, group_a: str, group_b: str) -> str:
    """File-safe identifier, e.g. 01_asian_vs_white."""
    def slug(text: str) -> str:
        return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")

    return f"{index:02d}_{slug(group_a)}_vs_{slug(group_b)}"


class CohortAgent(BaseAgent):
    """Agent for partitioning the cohort by a clinical attribute."""

    REQUIRED_INPUTS = ["expression_matrix.csv", "clinical_data.csv"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        merged_config = {**DEFAULT_CONFIG, **(config or {})}
        super().__init__("agent1_cohort", input_dir, output_dir, merged_config)

        self.clinical: Optional[pd.DataFrame] = None
        self.samples: List[str] = []

    def validate_inputs(self) -> bool:
        """Validate clinical data and its link to the expression samples."""
        max_size = self.config["max_group_size"]
        if max_size is not None and int(max_size) < int(self.config["min_group_size"]):
            self.logger.error(f"max_group_size {max_size} would cut groups below "
                              f"min_group_size {self.config['min_group_size']}")
            return False

        self.clinical = self.load_csv("clinical_data.csv")

        if "sample_id" not in self.clinical.columns:
            self.logger.error("clinical_data.csv has no sample_id column")
            return False

        attribute = self.config["clinical_attribute"]
        if attribute not in self.clinical.columns:
            self.logger.error(f"Clinical attribute '{attribute}' not in clinical data")
            return False

        # Only the header is needed
        self.samples = list(pd.read_csv(self.input_dir / "expression_matrix.csv",
                                        index_col=0, nrows=0).columns)
        self.files_read.append("expression_matrix.csv")

        missing = set(self.samples) - set(self.clinical["sample_id"])
        if missing:
            self.logger.warning(f"{len(missing)} expression samples have no clinical row")

        return True

    def run(self) -> Dict[str, Any]:
        """Partition samples and enumerate comparisons."""
        attribute = self.config["clinical_attribute"]
        min_size = int(self.config["min_group_size"])
        max_size = self.config["max_group_size"]
        seed = int(self.config["random_seed"])

        clinical = self.clinical[self.clinical["sample_id"].isin(self.samples)]
        labels = clean_attribute(clinical, attribute, self.config["excluded_values"])

        sizes = labels.value_counts().sort_index()
        self.logger.info(f"Subgroups of '{attribute}':")
        for group, size in sizes.items():
            flag = "" if size >= min_size else f" (< {min_size}, skipped)"
            self.logger.info(f"  {group}: {size}{flag}")

        pairs = enumerate_pairs(labels, min_size)

        comparisons = []
        for i, (group_a, group_b) in enumerate(pairs, start=1):
            samples_a = downsample(sorted(labels[labels == group_a].index), max_size, seed)
            samples_b = downsample(sorted(labels[labels == group_b].index), max_size, seed)
            comparisons.append({
                "id": comparison_id(i, group_a, group_b),
                "attribute": attribute,
                "group_a": group_a,
                "group_b": group_b,
                "n_a": len(samples_a),
                "n_b": len(samples_b),
                "samples_a": samples_a,
                "samples_b": samples_b,
            })

        groups = labels.rename("group").reset_index()
        groups.columns = ["sample_id", "group"]
        self.save_csv(groups, "cohort_groups.csv")

        size_table = sizes.rename("n_samples").reset_index()
        size_table.columns = ["group", "n_samples"]
        size_table["qualifies"] = size_table["n_samples"] >= min_size
        self.save_csv(size_table, "group_sizes.csv")

        self.comparisons = comparisons
        self.save_json(comparisons, "comparisons.json")

        self.logger.info("Cohort Partition Complete:")
        self.logger.info(f"  Labeled samples: {len(labels)}")
        self.logger.info(f"  Comparisons: {len(comparisons)}")

        return {
            "attribute": attribute,
            "labeled_samples": int(len(labels)),
            "group_sizes": {str(k): int(v) for k, v in sizes.items()},
            "min_group_size": min_size,
            "n_comparisons": len(comparisons),
            "comparison_ids": [c["id"] for c in comparisons],
        }

    def validate_outputs(self) -> bool:
        """Validate cohort outputs."""
        if not (self.output_dir / "comparisons.json").exists():
            self.logger.error("Missing comparisons.json")
            return False

        if len(self.comparisons) == 0:
            self.logger.error(
                f"No pair of '{self.config['clinical_attribute']}' subgroups has "
                f"at least {self.config['min_group_size']} samples each"
            )
            return False

        return True
