"""
Agent 0: Data Acquisition

Loads TCGA molecular + clinical data from the local cache, downloading it from
the GDC API on a cache miss, and aligns samples with patients.

Input:
- (none; reads the TCGA cache)

Output:
- expression_matrix.csv: genes x samples (one primary sample per patient)
- clinical_data.csv: one row per sample, clinical fields joined by patient
- meta_agent0_data.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..config import DEFAULT_CONFIG
from ..data.tcga_downloader import TCGADownloader
from ..utils.base_agent import BaseAgent


def select_samples(matrix: pd.DataFrame, sample_type_codes) -> pd.DataFrame:
    """Keep configured sample types and one sample per patient (first barcode in sorted order)."""
    codes = set(sample_type_codes)
    selected = {}
    for barcode in sorted(matrix.columns):
        if TCGADownloader.get_sample_type(barcode) not in codes:
            continue
        selected.setdefault(TCGADownloader.patient_barcode(barcode), barcode)
    return matrix[sorted(selected.values())]


def join_clinical(samples, clinical: pd.DataFrame) -> pd.DataFrame:
    """One clinical row per sample, joined on the patient barcode."""
    table = pd.DataFrame({"sample_id": list(samples)})
    table["patient_barcode"] = table["sample_id"].map(TCGADownloader.patient_barcode)

    clinical = clinical.copy()
    clinical.index = clinical.index.astype(str)
    return table.merge(clinical, left_on="patient_barcode", right_index=True, how="left")


class DataAgent(BaseAgent):
    """Agent for fetching or loading cached TCGA data."""

    REQUIRED_INPUTS: List[str] = []

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        downloader: Optional[TCGADownloader] = None
    ):
        merged_config = {**DEFAULT_CONFIG, **(config or {})}
        super().__init__("agent0_data", input_dir, output_dir, merged_config)

        self.downloader = downloader or TCGADownloader(cache_dir=self.config.get("cache_dir"))
        self.project: Optional[str] = None

    def validate_inputs(self) -> bool:
        """Validate the cancer type and data type."""
        try:
            self.project = self.downloader.get_project_code(self.config["cancer_type"])
        except ValueError as e:
            self.logger.error(str(e))
            return False

        data_type = self.config["data_type"]
        if data_type not in TCGADownloader.GDC_QUERIES and not self.downloader.is_cached(
            self.config["cancer_type"], data_type
        ):
            self.logger.error(f"Data type '{data_type}' can only be loaded from cache, and none was found")
            return False

        self.logger.info(f"Project: {self.project}, data type: {data_type}")
        return True

    def run(self) -> Dict[str, Any]:
        """Fetch or load data, align samples and clinical records."""
        matrix, _, clinical = self.downloader.get_data(
            self.config["cancer_type"],
            self.config["data_type"],
            force_download=self.config["force_download"],
            max_samples=self.config["max_samples"],
            n_workers=self.config["n_workers"],
        )

        n_before = matrix.shape[1]
        matrix = select_samples(matrix, self.config["sample_type_codes"])
        self.logger.info(f"Samples with type {sorted(self.config['sample_type_codes'])}: "
                         f"{matrix.shape[1]}/{n_before} (one per patient)")

        clinical_data = join_clinical(matrix.columns, clinical)

        n_missing = clinical_data.drop(columns=["sample_id", "patient_barcode"]).isna().all(axis=1).sum()
        if n_missing:
            self.logger.warning(f"{n_missing} samples have no clinical record")

        matrix.index.name = "gene_id"
        self.save_csv(matrix, "expression_matrix.csv", index=True)
        self.save_csv(clinical_data, "clinical_data.csv")

        self.matrix = matrix
        self.clinical_data = clinical_data

        self.logger.info("Data Acquisition Complete:")
        self.logger.info(f"  Genes: {matrix.shape[0]}")
        self.logger.info(f"  Samples: {matrix.shape[1]}")

        return {
            "project": self.project,
            "data_type": self.config["data_type"],
            "n_genes": int(matrix.shape[0]),
            "n_samples": int(matrix.shape[1]),
            "clinical_fields": [c for c in clinical_data.columns
                                if c not in ("sample_id", "patient_barcode")],
        }

    def validate_outputs(self) -> bool:
        """Validate data outputs."""
        for filename in ["expression_matrix.csv", "clinical_data.csv"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        if self.matrix.shape[1] == 0:
            self.logger.error("No samples left after sample-type selection")
            return False

        return True
