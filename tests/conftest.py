"""
TCGA Cohort DEG - Test Configuration and Fixtures
"""
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("MPLBACKEND", "Agg")


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def two_group_expression():
    """
    Log-scale expression, 200 genes x 12 samples (6 in group A, 6 in group B).

    GENE0-GENE19 are higher in A, GENE20-GENE39 are lower in A.
    """
    rng = np.random.default_rng(42)
    n_genes = 200
    genes = [f"GENE{i}" for i in range(n_genes)]
    samples_a = [f"A_{i}" for i in range(6)]
    samples_b = [f"B_{i}" for i in range(6)]

    baseline = rng.uniform(4, 10, size=(n_genes, 1))
    gene_sd = rng.uniform(0.2, 0.6, size=(n_genes, 1))
    values = baseline + rng.normal(0, 1, size=(n_genes, 12)) * gene_sd

    values[:20, :6] += 2.0
    values[20:40, :6] -= 2.0

    df = pd.DataFrame(values, index=genes, columns=samples_a + samples_b)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def group_samples(two_group_expression):
    """(samples_a, samples_b) for two_group_expression."""
    columns = list(two_group_expression.columns)
    return columns[:6], columns[6:]


@pytest.fixture
def sample_count_matrix():
    """Small synthetic raw count matrix."""
    rng = np.random.default_rng(7)
    n_genes = 100
    genes = [f"GENE{i}" for i in range(n_genes)]
    samples = [f"S{i}" for i in range(8)]

    counts = rng.negative_binomial(n=10, p=0.05, size=(n_genes, len(samples)))
    # A few genes that the low-count filter should remove
    counts[:5, :] = 0
    counts[5, :] = 1

    df = pd.DataFrame(counts, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_clinical():
    """One clinical row per sample, with a race column."""
    races = (["white"] * 20 + ["black or african american"] * 15 + ["asian"] * 15
             + ["american indian or alaska native"] * 2 + ["not reported"] * 6
             + [None] * 2)
    return pd.DataFrame({
        "sample_id": [f"TCGA-AA-{i:04d}-01A" for i in range(len(races))],
        "patient_barcode": [f"TCGA-AA-{i:04d}" for i in range(len(races))],
        "race": races,
    })


@pytest.fixture
def sample_cache(tmp_path):
    """Synthetic TCGA-BRCA cache; returns the cache directory."""
    from tcga_cohort_deg.orchestrator import create_sample_cache

    cache_dir = tmp_path / "tcga"
    create_sample_cache(cache_dir, cancer_type="BRCA", n_genes=300)
    return cache_dir


class FakeEnrichr:
    """Stand-in for gseapy.enrichr that records its calls."""

    def __init__(self):
        self.calls = []

    def __call__(self, gene_list, gene_sets, organism="human", outdir=None,
                 cutoff=0.05, no_plot=True, background=None, **kwargs):
        self.calls.append({
            "gene_list": list(gene_list),
            "gene_sets": gene_sets,
            "background": background,
        })
        n = len(gene_list)
        results = pd.DataFrame({
            "Gene_set": [str(gene_sets)] * 2,
            "Term": ["Planted pathway", "Unrelated pathway"],
            "Overlap": [f"{min(n, 3)}/40", "1/200"],
            "P-value": [1e-6, 0.3],
            "Adjusted P-value": [1e-4, 0.6],
            "Odds Ratio": [25.0, 1.1],
            "Combined Score": [300.0, 1.2],
            "Genes": [";".join(gene_list[:3]), gene_list[0]],
        })
        return SimpleNamespace(results=results)


@pytest.fixture
def fake_enrichr(monkeypatch):
    """Patch gseapy.enrichr so enrichment runs offline."""
    import gseapy

    fake = FakeEnrichr()
    monkeypatch.setattr(gseapy, "enrichr", fake)
    return fake


@pytest.fixture
def test_config(sample_cache):
    """Pipeline config pointing at the synthetic cache."""
    return {
        "cancer_type": "BRCA",
        "clinical_attribute": "race",
        "cache_dir": str(sample_cache),
        "min_group_size": 15,
        "enrichr_libraries": ["GO_Biological_Process_2023", "KEGG_2021_Human"],
        "top_genes_heatmap": 30,
    }
