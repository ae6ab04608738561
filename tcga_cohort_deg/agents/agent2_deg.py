"""
Agent 2: Differential Expression Gene (DEG) Analysis

Runs a two-group limma analysis (no-intercept indicator design, contrast
A - B, empirical-Bayes moderated t, Benjamini-Hochberg FDR) for every
comparison from Agent 1.

Engines:
- native: numpy/scipy implementation (stats.limma)
- limma: Bioconductor limma via rpy2

Input:
- expression_matrix.csv: From Agent 0
- comparisons.json: From Agent 1

Output:
- deg_<id>_all.csv: Full results per comparison
- deg_<id>_significant.csv: Retained genes with direction (up/down)
- deg_<id>_expression.csv: Normalized expression of retained genes (pair samples)
- deg_summary.csv: Genes tested / up / down per comparison
- meta_agent2_deg.json: Execution metadata
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..config import DEFAULT_CONFIG
from ..stats.limma import split_by_direction, two_group_limma
from ..stats.normalization import normalize_expression
from ..utils.base_agent import BaseAgent

RESULT_COLUMNS = ["gene_id", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]


class DEGAgent(BaseAgent):
    """Agent for limma-based differential expression analysis."""

    REQUIRED_INPUTS = ["expression_matrix.csv", "comparisons.json"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        merged_config = {**DEFAULT_CONFIG, **(config or {})}
        super().__init__("agent2_deg", input_dir, output_dir, merged_config)

        self.expression: Optional[pd.DataFrame] = None
        self.comparisons: List[Dict[str, Any]] = []

    def validate_inputs(self) -> bool:
        """Validate expression matrix and comparisons."""
        self.expression = self.load_csv("expression_matrix.csv", index_col=0)
        self.expression = self.expression[self.expression.index.notna()]
        self.comparisons = self.load_json("comparisons.json")

        if not self.comparisons:
            self.logger.error("No comparisons to run")
            return False

        columns = set(self.expression.columns)
        for comparison in self.comparisons:
            missing = set(comparison["samples_a"] + comparison["samples_b"]) - columns
            if missing:
                self.logger.error(f"{comparison['id']}: samples missing from expression "
                                  f"matrix: {sorted(missing)[:5]}")
                return False
            if comparison["n_a"] < 2 or comparison["n_b"] < 2:
                self.logger.error(f"{comparison['id']}: each group needs at least 2 samples")
                return False

        self.logger.info(f"Expression matrix: {self.expression.shape[0]} genes, "
                         f"{self.expression.shape[1]} samples")
        self.logger.info(f"Comparisons: {len(self.comparisons)}")

        return True

    def _prepare_expression(self, samples: List[str]) -> pd.DataFrame:
        """Normalize a pair's samples and drop untestable genes."""
        expr = normalize_expression(
            self.expression[samples],
            data_type=self.config["data_type"],
            min_count=self.config["min_count"],
        )

        n_before = len(expr)
        expr = expr.dropna()
        expr = expr[expr.var(axis=1) > 0]
        dropped = n_before - len(expr)
        if dropped:
            self.logger.info(f"  Dropped {dropped} genes with missing values or zero variance")

        return expr

    def _run_native(self, expr: pd.DataFrame, samples_a: List[str],
                    samples_b: List[str]) -> pd.DataFrame:
        return two_group_limma(expr, samples_a, samples_b)

    def _run_limma_r(self, expr: pd.DataFrame, samples_a: List[str],
                     samples_b: List[str]) -> pd.DataFrame:
        """Run Bioconductor limma via rpy2."""
        try:
            import rpy2.robjects as ro
            from rpy2.robjects import pandas2ri
            from rpy2.robjects.conversion import localconverter
            from rpy2.robjects.packages import importr
        except ImportError as e:
            raise ImportError("rpy2 not installed. Install with: pip install 'tcga-cohort-deg[r]'") from e

        importr('limma')

        samples = list(samples_a) + list(samples_b)
        groups = ["A"] * len(samples_a) + ["B"] * len(samples_b)

        with localconverter(ro.default_converter + pandas2ri.converter):
            ro.globalenv["expr"] = ro.conversion.py2rpy(expr[samples])
            ro.globalenv["group"] = ro.StrVector(groups)
            ro.r('''
                group <- factor(group, levels = c("A", "B"))
                design <- model.matrix(~0 + group)
                colnames(design) <- c("groupA", "groupB")
                fit <- lmFit(as.matrix(expr), design)
                contrast <- makeContrasts(groupA - groupB, levels = design)
                fit2 <- eBayes(contrasts.fit(fit, contrast))
                tt <- topTable(fit2, number = Inf, adjust.method = "BH", sort.by = "none")
            ''')
            table = ro.conversion.rpy2py(ro.globalenv["tt"])

        table.index = expr.index
        table.index.name = "gene_id"
        return table[["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]]

    def _run_comparison(self, comparison: Dict[str, Any]) -> Dict[str, Any]:
        cid = comparison["id"]
        samples_a = comparison["samples_a"]
        samples_b = comparison["samples_b"]
        self.logger.info(f"{cid}: {comparison['group_a']} (n={len(samples_a)}) vs "
                         f"{comparison['group_b']} (n={len(samples_b)})")

        expr = self._prepare_expression(samples_a + samples_b)

        if self.config["engine"] == "limma":
            table = self._run_limma_r(expr, samples_a, samples_b)
        else:
            table = self._run_native(expr, samples_a, samples_b)

        up, down = split_by_direction(
            table,
            pvalue_cutoff=self.config["pvalue_cutoff"],
            log2fc_cutoff=self.config["log2fc_cutoff"],
        )

        all_results = table.reset_index()[RESULT_COLUMNS]
        self.save_csv(all_results, f"deg_{cid}_all.csv")

        significant = pd.concat([up, down]).reset_index()[RESULT_COLUMNS]
        significant["direction"] = np.where(significant["t"] > 0, "up", "down")
        significant = significant.sort_values("adj.P.Val")
        self.save_csv(significant, f"deg_{cid}_significant.csv")

        sig_expr = expr.loc[significant["gene_id"]]
        self.save_csv(sig_expr, f"deg_{cid}_expression.csv", index=True)

        self.logger.info(f"  Genes tested: {len(table)}, up: {len(up)}, down: {len(down)}")

        return {
            "comparison_id": cid,
            "group_a": comparison["group_a"],
            "group_b": comparison["group_b"],
            "n_a": len(samples_a),
            "n_b": len(samples_b),
            "genes_tested": int(len(table)),
            "up_count": int(len(up)),
            "down_count": int(len(down)),
        }

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis for every comparison."""
        summary = [self._run_comparison(c) for c in self.comparisons]

        summary_df = pd.DataFrame(summary)
        self.save_csv(summary_df, "deg_summary.csv")

        self.logger.info("DEG Analysis Complete:")
        self.logger.info(f"  Engine: {self.config['engine']}")
        self.logger.info(f"  Comparisons: {len(summary)}")
        self.logger.info(f"  Total DEGs: {int((summary_df['up_count'] + summary_df['down_count']).sum())}")

        return {
            "engine": self.config["engine"],
            "n_comparisons": len(summary),
            "pvalue_cutoff": self.config["pvalue_cutoff"],
            "log2fc_cutoff": self.config["log2fc_cutoff"],
            "comparisons": summary,
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        if not (self.output_dir / "deg_summary.csv").exists():
            self.logger.error("Missing output file: deg_summary.csv")
            return False

        for comparison in self.comparisons:
            cid = comparison["id"]
            for suffix in ("all", "significant"):
                filepath = self.output_dir / f"deg_{cid}_{suffix}.csv"
                if not filepath.exists():
                    self.logger.error(f"Missing output file: {filepath.name}")
                    return False

            sig_df = pd.read_csv(self.output_dir / f"deg_{cid}_significant.csv")
            if len(sig_df) == 0:
                self.logger.warning(f"{cid}: no significant DEGs (this may be expected)")
                continue

            if sig_df["adj.P.Val"].isna().any():
                self.logger.error(f"{cid}: NA values found in adj.P.Val column")
                return False

            # Same gene cannot be both up and down
            if sig_df["gene_id"].duplicated().any():
                self.logger.error(f"{cid}: duplicated genes in significant set")
                return False

        return True
