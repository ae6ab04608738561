"""Configuration settings for the TCGA cohort DEG pipeline."""
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

load_dotenv()

# Paths
TCGA_CACHE_DIR = Path(os.getenv("TCGA_CACHE_DIR", "data/tcga"))
RESULTS_DIR = Path(os.getenv("RESULTS_DIR", "results"))

# GDC API
GDC_API_BASE = os.getenv("GDC_API_BASE", "https://api.gdc.cancer.gov")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Supported data types
DATA_TYPES = ("RNASeq", "CNV", "log")

# Default analysis parameters (overridable via JSON config file)
DEFAULT_CONFIG: Dict[str, Any] = {
    # Data
    "cancer_type": "BRCA",
    "data_type": "RNASeq",
    "sample_type_codes": ["01"],  # Primary Tumor
    "max_samples": 0,  # 0 = all files
    "cache_dir": None,  # None = TCGA_CACHE_DIR
    "force_download": False,
    "n_workers": 4,
    # Cohort partition
    "clinical_attribute": "race",
    "min_group_size": 15,
    "max_group_size": None,
    "random_seed": 42,
    "excluded_values": [
        "not reported", "unknown", "not allowed to collect",
        "[not available]", "[unknown]", "[not evaluated]", "na",
    ],
    # Differential expression
    "engine": "native",  # native or limma (R via rpy2)
    "min_count": 10,
    "pvalue_cutoff": 0.05,  # BH-adjusted
    "log2fc_cutoff": 0.0,
    # Enrichment
    "enrichr_libraries": [
        "GO_Biological_Process_2023",
        "GO_Molecular_Function_2023",
        "GO_Cellular_Component_2023",
        "KEGG_2021_Human",
    ],
    "organism": "human",
    "enrichment_fdr_cutoff": 0.05,
    "min_genes_for_enrichment": 3,
    # Report
    "report_name": "cohort_deg_report.xlsx",
    "plot_comparison": None,  # comparison id; None = most DEGs
    "top_genes_heatmap": 50,
    "top_terms_barplot": 15,
    "figure_format": ["png"],
    "dpi": 150,
}


def setup_logging(name: str = "tcga_cohort_deg") -> logging.Logger:
    """
    Configure and return a logger for the application.

    Args:
        name: Logger name (usually module name)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(console_handler)

    # Optionally add file handler
    log_file = os.getenv("LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def merge_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge user overrides over DEFAULT_CONFIG, rejecting unknown keys."""
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}")

    config = {**DEFAULT_CONFIG, **overrides}

    if config["data_type"] not in DATA_TYPES:
        raise ValueError(f"data_type must be one of {DATA_TYPES}, got {config['data_type']!r}")
    if config["engine"] not in ("native", "limma"):
        raise ValueError(f"engine must be 'native' or 'limma', got {config['engine']!r}")
    if int(config["min_group_size"]) < 2:
        raise ValueError("min_group_size must be at least 2")
    if config["max_group_size"] is not None and int(config["max_group_size"]) < int(config["min_group_size"]):
        raise ValueError(
            f"max_group_size ({config['max_group_size']}) is below "
            f"min_group_size ({config['min_group_size']})"
        )

    return config


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load a JSON config file and merge it over the defaults."""
    if path is None:
        return merge_config()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)

    return merge_config(overrides)
