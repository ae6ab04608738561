"""
Agent 3: Enrichment Analysis

Queries Enrichr libraries (via gseapy) with the up- and down-regulated gene
lists of every comparison and keeps terms below the FDR cutoff.

Libraries are either Enrichr library names (online) or paths to local .gmt
files (offline; gseapy runs the hypergeometric test against the genes tested
in that comparison).

Input:
- comparisons.json: From Agent 1
- deg_<id>_significant.csv, deg_<id>_all.csv: From Agent 2

Output:
- enrichment_<id>.csv: Significant terms for one comparison
- enrichment_summary.csv: Term counts per comparison / direction / library
- meta_agent3_enrichment.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import gseapy as gp
import pandas as pd

from ..config import DEFAULT_CONFIG
from ..utils.base_agent import BaseAgent

ENRICHMENT_COLUMNS = [
    "comparison_id", "direction", "library", "term_name", "overlap", "gene_count",
    "pvalue", "padj", "odds_ratio", "combined_score", "genes",
]


def is_local_library(library: str) -> bool:
    return str(library).endswith(".gmt")


def library_label(library: str) -> str:
    """Short display name for a library (file stem for .gmt paths)."""
    return Path(library).stem if is_local_library(library) else library


class EnrichmentAgent(BaseAgent):
    """Agent for Enrichr functional enrichment of DEG lists."""

    REQUIRED_INPUTS = ["comparisons.json", "deg_summary.csv"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        merged_config = {**DEFAULT_CONFIG, **(config or {})}
        super().__init__("agent3_enrichment", input_dir, output_dir, merged_config)

        self.comparisons: List[Dict[str, Any]] = []
        self.failures: List[Dict[str, str]] = []
        self._gmt_cache: Dict[str, Dict[str, List[str]]] = {}

    def validate_inputs(self) -> bool:
        """Validate comparisons and DEG tables."""
        self.comparisons = self.load_json("comparisons.json")

        for comparison in self.comparisons:
            filepath = self.input_dir / f"deg_{comparison['id']}_significant.csv"
            if not filepath.exists():
                raise FileNotFoundError(f"Required input file not found: {filepath}")

        for library in self.config["enrichr_libraries"]:
            if is_local_library(library) and not Path(library).exists():
                self.logger.error(f"Gene set file not found: {library}")
                return False

        if not self.config["enrichr_libraries"]:
            self.logger.error("No enrichment libraries configured")
            return False

        return True

    def _gene_sets(self, library: str) -> Union[str, Dict[str, List[str]]]:
        """Enrichr library name, or the parsed gene sets of a local .gmt file."""
        if not is_local_library(library):
            return library
        if library not in self._gmt_cache:
            self._gmt_cache[library] = gp.read_gmt(library)
        return self._gmt_cache[library]

    def _run_enrichr(
        self,
        gene_list: List[str],
        library: str,
        background: List[str]
    ) -> Tuple[Optional[pd.DataFrame], str]:
        """Run Enrichr for one gene list against one library. Returns (results, status)."""
        kwargs = {}
        if is_local_library(library):
            kwargs["background"] = background

        try:
            enr = gp.enrichr(
                gene_list=gene_list,
                gene_sets=self._gene_sets(library),
                organism=self.config["organism"],
                outdir=None,
                cutoff=self.config["enrichment_fdr_cutoff"],
                no_plot=True,
                **kwargs
            )
        except Exception as e:
            self.logger.error(f"Enrichr failed for {library_label(library)}: {e}")
            self.failures.append({"library": library_label(library), "error": str(e)})
            return None, "failed"

        results = enr.results
        if results is None or len(results) == 0:
            return None, "ok"

        results = results[results["Adjusted P-value"] < self.config["enrichment_fdr_cutoff"]].copy()

        results = results.rename(columns={
            "Term": "term_name",
            "Adjusted P-value": "padj",
            "P-value": "pvalue",
            "Odds Ratio": "odds_ratio",
            "Combined Score": "combined_score",
            "Overlap": "overlap",
            "Genes": "genes",
        })
        results["gene_count"] = results["overlap"].apply(lambda x: int(str(x).split('/')[0]))
        results["library"] = library_label(library)

        return results.sort_values("padj"), "ok"

    def _run_comparison(self, comparison: Dict[str, Any]) -> List[Dict[str, Any]]:
        cid = comparison["id"]
        significant = self.load_csv(f"deg_{cid}_significant.csv")
        all_results = self.load_csv(f"deg_{cid}_all.csv", required=False)
        background = (all_results["gene_id"].astype(str).tolist()
                      if all_results is not None else [])

        frames = []
        counts = []
        for direction in ("up", "down"):
            genes = significant.loc[significant["direction"] == direction, "gene_id"].astype(str).tolist()

            if len(genes) < self.config["min_genes_for_enrichment"]:
                self.logger.info(f"{cid} {direction}: {len(genes)} genes, below "
                                 f"{self.config['min_genes_for_enrichment']} - skipped")
                for library in self.config["enrichr_libraries"]:
                    counts.append({"comparison_id": cid, "direction": direction,
                                   "library": library_label(library), "n_genes": len(genes),
                                   "significant_terms": 0, "status": "skipped"})
                continue

            for library in self.config["enrichr_libraries"]:
                self.logger.info(f"{cid} {direction}: {len(genes)} genes vs {library_label(library)}")
                results, status = self._run_enrichr(genes, library, background)
                n_terms = 0 if results is None else len(results)
                if n_terms:
                    results = results.assign(comparison_id=cid, direction=direction)
                    frames.append(results[ENRICHMENT_COLUMNS])
                counts.append({"comparison_id": cid, "direction": direction,
                               "library": library_label(library), "n_genes": len(genes),
                               "significant_terms": n_terms,
                               "status": status})

        if frames:
            enrichment = pd.concat(frames, ignore_index=True)
        else:
            enrichment = pd.DataFrame(columns=ENRICHMENT_COLUMNS)
        self.save_csv(enrichment, f"enrichment_{cid}.csv")

        return counts

    def run(self) -> Dict[str, Any]:
        """Execute enrichment for every comparison."""
        counts: List[Dict[str, Any]] = []
        for comparison in self.comparisons:
            counts.extend(self._run_comparison(comparison))

        summary = pd.DataFrame(counts, columns=["comparison_id", "direction", "library",
                                                "n_genes", "significant_terms", "status"])
        self.save_csv(summary, "enrichment_summary.csv")

        total = int(summary["significant_terms"].sum()) if len(summary) else 0

        self.logger.info("Enrichment Analysis Complete:")
        self.logger.info(f"  Libraries: {[library_label(l) for l in self.config['enrichr_libraries']]}")
        self.logger.info(f"  Total significant terms: {total}")
        if self.failures:
            self.logger.warning(f"  Failed queries: {len(self.failures)}")

        return {
            "libraries": [library_label(l) for l in self.config["enrichr_libraries"]],
            "fdr_cutoff": self.config["enrichment_fdr_cutoff"],
            "total_significant_terms": total,
            "failed_queries": self.failures,
        }

    def validate_outputs(self) -> bool:
        """Validate enrichment outputs."""
        if not (self.output_dir / "enrichment_summary.csv").exists():
            self.logger.error("Missing enrichment_summary.csv")
            return False

        for comparison in self.comparisons:
            if not (self.output_dir / f"enrichment_{comparison['id']}.csv").exists():
                self.logger.error(f"Missing enrichment_{comparison['id']}.csv")
                return False

        return True
