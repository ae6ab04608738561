"""
Agent 4: Report

Writes one Excel workbook with numbered sheets and human-readable headers, and
draws a heatmap and an enrichment bar chart for one selected comparison.

Workbook layout:
    1 Summary                     one row per comparison
    2 DEG <A> vs <B>              DEGs of comparison 1
    3 Enrichment <A> vs <B>       enriched terms of comparison 1
    4 DEG ...                     and so on

Input:
- comparisons.json: From Agent 1
- deg_summary.csv, deg_<id>_significant.csv, deg_<id>_expression.csv: From Agent 2
- enrichment_<id>.csv: From Agent 3

Output:
- <report_name>.xlsx
- figures/heatmap_<id>.png, figures/enrichment_barplot_<id>.png
- report_manifest.json
- meta_agent4_report.json: Execution metadata
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from ..config import DEFAULT_CONFIG
from ..utils.base_agent import BaseAgent

MAX_SHEET_NAME = 31
TABLE_START_ROW = 3  # 0-based row where the table header goes; rows 1-2 hold the title

DEG_HEADERS = {
    "gene_id": "Gene",
    "logFC": "log2 Fold Change",
    "AveExpr": "Average Expression (log2)",
    "t": "Moderated t-statistic",
    "P.Value": "P-value",
    "adj.P.Val": "BH-adjusted P-value",
    "B": "Log-odds of Differential Expression (B)",
    "direction": "Direction",
}

ENRICHMENT_HEADERS = {
    "direction": "Gene List",
    "library": "Library",
    "term_name": "Term",
    "overlap": "Overlap (list genes in term / term size)",
    "gene_count": "Overlapping Genes (n)",
    "pvalue": "P-value",
    "padj": "FDR (BH-adjusted P-value)",
    "odds_ratio": "Odds Ratio",
    "combined_score": "Combined Score",
    "genes": "Overlapping Genes",
}

SUMMARY_HEADERS = {
    "comparison": "Comparison",
    "group_a": "Group A",
    "n_a": "Group A Samples (n)",
    "group_b": "Group B",
    "n_b": "Group B Samples (n)",
    "genes_tested": "Genes Tested",
    "up_count": "Higher in Group A (n)",
    "down_count": "Higher in Group B (n)",
    "enriched_terms": "Enriched Terms (n)",
    "deg_sheet": "DEG Sheet",
    "enrichment_sheet": "Enrichment Sheet",
}


def sheet_name(number: int, title: str) -> str:
    """Numbered sheet name, stripped of characters Excel rejects, at most 31 chars."""
    name = re.sub(r"[\[\]:*?/\\]", "-", f"{number} {title}")
    return name[:MAX_SHEET_NAME]


class ReportAgent(BaseAgent):
    """Agent for the spreadsheet report and figures."""

    REQUIRED_INPUTS = ["comparisons.json", "deg_summary.csv", "enrichment_summary.csv"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        merged_config = {**DEFAULT_CONFIG, **(config or {})}
        super().__init__("agent4_report", input_dir, output_dir, merged_config)

        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        sns.set_style("whitegrid")
        plt.rcParams['font.size'] = 10

        self.comparisons: List[Dict[str, Any]] = []
        self.deg_summary: Optional[pd.DataFrame] = None
        self.sheet_names: List[str] = []
        self.figures: List[str] = []

    @property
    def report_path(self) -> Path:
        return self.output_dir / self.config["report_name"]

    def validate_inputs(self) -> bool:
        """Validate DEG and enrichment inputs."""
        self.comparisons = self.load_json("comparisons.json")
        self.deg_summary = self.load_csv("deg_summary.csv")

        if not self.comparisons:
            self.logger.error("No comparisons to report")
            return False

        for comparison in self.comparisons:
            filepath = self.input_dir / f"deg_{comparison['id']}_significant.csv"
            if not filepath.exists():
                raise FileNotFoundError(f"Required input file not found: {filepath}")

        if not str(self.config["report_name"]).endswith(".xlsx"):
            self.logger.error("report_name must end with .xlsx")
            return False

        return True

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _load_enrichment(self, cid: str) -> pd.DataFrame:
        enrichment = self.load_csv(f"enrichment_{cid}.csv", required=False)
        if enrichment is None:
            return pd.DataFrame(columns=list(ENRICHMENT_HEADERS))
        return enrichment

    def _deg_table(self, comparison: Dict[str, Any]) -> pd.DataFrame:
        deg = self.load_csv(f"deg_{comparison['id']}_significant.csv")
        deg = deg.copy()
        deg["direction"] = deg["direction"].map({
            "up": f"Higher in {comparison['group_a']}",
            "down": f"Higher in {comparison['group_b']}",
        })
        return deg[list(DEG_HEADERS)].rename(columns=DEG_HEADERS)

    def _enrichment_table(self, comparison: Dict[str, Any], enrichment: pd.DataFrame) -> pd.DataFrame:
        table = enrichment.copy()
        table["direction"] = table["direction"].map({
            "up": f"Higher in {comparison['group_a']}",
            "down": f"Higher in {comparison['group_b']}",
        })
        table = table.sort_values(["direction", "library", "padj"])
        return table[list(ENRICHMENT_HEADERS)].rename(columns=ENRICHMENT_HEADERS)

    @staticmethod
    def _write_sheet(writer: pd.ExcelWriter, name: str, table: pd.DataFrame,
                     title: str, subtitle: str) -> None:
        """Write a titled table and fit column widths."""
        table.to_excel(writer, sheet_name=name, index=False, startrow=TABLE_START_ROW)
        ws = writer.sheets[name]

        ws.cell(row=1, column=1, value=title).font = Font(bold=True, size=12)
        ws.cell(row=2, column=1, value=subtitle).font = Font(italic=True)
        if table.empty:
            ws.cell(row=TABLE_START_ROW + 2, column=1, value="No entries passed the cutoff.")

        for i, column in enumerate(table.columns, start=1):
            values = table[column].astype(str).head(500)
            width = max([len(str(column))] + [len(v) for v in values])
            ws.column_dimensions[get_column_letter(i)].width = min(width + 2, 60)

        for cell in ws[TABLE_START_ROW + 1]:
            cell.font = Font(bold=True)

    def _write_workbook(self) -> None:
        cutoff = self.config["pvalue_cutoff"]
        fdr = self.config["enrichment_fdr_cutoff"]
        summary_rows = []
        sheets = []

        for k, comparison in enumerate(self.comparisons):
            cid = comparison["id"]
            a, b = comparison["group_a"], comparison["group_b"]
            deg_number = 2 + 2 * k
            enr_number = deg_number + 1

            deg_sheet = sheet_name(deg_number, f"DEG {a} vs {b}")
            enr_sheet = sheet_name(enr_number, f"Enrichment {a} vs {b}")

            deg_table = self._deg_table(comparison)
            enrichment = self._load_enrichment(cid)
            enr_table = self._enrichment_table(comparison, enrichment)

            stats_row = self.deg_summary[self.deg_summary["comparison_id"] == cid]
            genes_tested = int(stats_row["genes_tested"].iloc[0]) if len(stats_row) else np.nan

            summary_rows.append({
                "comparison": f"{comparison['attribute']}: {a} vs {b}",
                "group_a": a,
                "n_a": comparison["n_a"],
                "group_b": b,
                "n_b": comparison["n_b"],
                "genes_tested": genes_tested,
                "up_count": int((deg_table[DEG_HEADERS["direction"]] == f"Higher in {a}").sum()),
                "down_count": int((deg_table[DEG_HEADERS["direction"]] == f"Higher in {b}").sum()),
                "enriched_terms": len(enr_table),
                "deg_sheet": deg_sheet,
                "enrichment_sheet": enr_sheet,
            })

            attribute = comparison["attribute"]
            sheets.append((
                deg_sheet, deg_table,
                f"Differentially expressed genes: {attribute} = {a} (n={comparison['n_a']}) "
                f"vs {b} (n={comparison['n_b']})",
                f"limma moderated t-test, contrast {a} - {b}; genes with BH-adjusted "
                f"P-value < {cutoff}; positive log2 fold change = higher in {a}",
            ))
            sheets.append((
                enr_sheet, enr_table,
                f"Enrichr results: {attribute} = {a} vs {b}",
                f"Libraries: {', '.join(sorted(set(enrichment['library'].astype(str)))) or 'none'}; "
                f"terms with FDR < {fdr}",
            ))

        summary = pd.DataFrame(summary_rows, columns=list(SUMMARY_HEADERS)).rename(columns=SUMMARY_HEADERS)
        summary_sheet = sheet_name(1, "Summary")
        attribute = self.comparisons[0]["attribute"]

        with pd.ExcelWriter(self.report_path, engine="openpyxl") as writer:
            self._write_sheet(
                writer, summary_sheet, summary,
                f"TCGA {self.config['cancer_type']}: pairwise comparisons by {attribute}",
                f"Subgroups with at least {self.config['min_group_size']} samples; "
                f"data type {self.config['data_type']}",
            )
            for name, table, title, subtitle in sheets:
                self._write_sheet(writer, name, table, title, subtitle)

        self.sheet_names = [summary_sheet] + [s[0] for s in sheets]
        self.logger.info(f"Saved {self.report_path.name}: {len(self.sheet_names)} sheets")

    # ------------------------------------------------------------------
    # Figures
    # ------------------------------------------------------------------

    def _select_comparison(self) -> Dict[str, Any]:
        """Configured comparison, or the one with the most DEGs."""
        by_id = {c["id"]: c for c in self.comparisons}
        chosen = self.config["plot_comparison"]
        if chosen is not None:
            if chosen not in by_id:
                raise ValueError(f"plot_comparison '{chosen}' not among {list(by_id)}")
            return by_id[chosen]

        totals = self.deg_summary.assign(total=self.deg_summary["up_count"] + self.deg_summary["down_count"])
        best = totals.sort_values("total", ascending=False, kind="stable").iloc[0]["comparison_id"]
        return by_id[best]

    def _save_figure(self, fig: plt.Figure, name: str) -> List[str]:
        """Save figure in the configured formats."""
        saved_files = []
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _plot_heatmap(self, comparison: Dict[str, Any]) -> Optional[List[str]]:
        """Z-scored heatmap of the top DEGs across both groups."""
        cid = comparison["id"]
        expr = self.load_csv(f"deg_{cid}_expression.csv", required=False, index_col=0)
        deg = self.load_csv(f"deg_{cid}_significant.csv")

        if expr is None or len(deg) == 0:
            self.logger.warning(f"Skipping heatmap - no DEGs for {cid}")
            return None

        n_genes = min(self.config["top_genes_heatmap"], len(deg))
        top_genes = deg.sort_values("adj.P.Val").head(n_genes)["gene_id"]
        top_genes = [g for g in top_genes if g in expr.index]

        samples = [s for s in comparison["samples_a"] + comparison["samples_b"] if s in expr.columns]
        data = expr.loc[top_genes, samples]
        zscore = data.sub(data.mean(axis=1), axis=0).div(data.std(axis=1).replace(0, np.nan), axis=0)

        fig, ax = plt.subplots(figsize=(12, max(4, 0.18 * len(top_genes) + 2)))
        sns.heatmap(zscore, cmap="RdBu_r", center=0, ax=ax, xticklabels=False,
                    yticklabels=len(top_genes) <= 60, cbar_kws={'label': 'Z-score'})

        n_a = len([s for s in comparison["samples_a"] if s in expr.columns])
        ax.axvline(n_a, color='black', linewidth=1.5)
        ax.set_xticks([n_a / 2, n_a + (len(samples) - n_a) / 2])
        ax.set_xticklabels([f"{comparison['group_a']} (n={n_a})",
                            f"{comparison['group_b']} (n={len(samples) - n_a})"], rotation=0)
        ax.set_title(f"Top {len(top_genes)} DEGs: {comparison['group_a']} vs {comparison['group_b']}")
        ax.set_xlabel('Samples')
        ax.set_ylabel('Genes')
        plt.tight_layout()

        return self._save_figure(fig, f"heatmap_{cid}")

    def _plot_enrichment_barplot(self, comparison: Dict[str, Any]) -> Optional[List[str]]:
        """Bar chart of the top enriched terms (-log10 FDR), colored by gene list."""
        cid = comparison["id"]
        enrichment = self._load_enrichment(cid)

        if len(enrichment) == 0:
            self.logger.warning(f"Skipping enrichment barplot - no terms for {cid}")
            return None

        n_terms = min(self.config["top_terms_barplot"], len(enrichment))
        top = enrichment.sort_values("padj").head(n_terms).copy()
        top["neg_log10_padj"] = -np.log10(top["padj"].clip(lower=1e-300))
        top["label"] = top.apply(
            lambda r: f"{str(r['term_name'])[:50]} ({r['library']})", axis=1
        )

        colors = {"up": "#d6604d", "down": "#4393c3"}
        fig, ax = plt.subplots(figsize=(10, max(3, 0.4 * n_terms + 1)))
        ax.barh(range(n_terms), top["neg_log10_padj"],
                color=[colors.get(d, "grey") for d in top["direction"]], alpha=0.85)

        ax.set_yticks(range(n_terms))
        ax.set_yticklabels(top["label"])
        ax.set_xlabel('-log10 FDR')
        ax.set_title(f"Top Enriched Terms: {comparison['group_a']} vs {comparison['group_b']}")

        from matplotlib.patches import Patch
        ax.legend(handles=[
            Patch(color=colors["up"], label=f"Higher in {comparison['group_a']}"),
            Patch(color=colors["down"], label=f"Higher in {comparison['group_b']}"),
        ], loc='lower right', fontsize=8)

        ax.invert_yaxis()
        plt.tight_layout()

        return self._save_figure(fig, f"enrichment_barplot_{cid}")

    def run(self) -> Dict[str, Any]:
        """Write the workbook and figures."""
        self._write_workbook()

        comparison = self._select_comparison()
        self.logger.info(f"Plotting comparison {comparison['id']}")

        for func in (self._plot_heatmap, self._plot_enrichment_barplot):
            result = func(comparison)
            if result:
                self.figures.extend(result)

        manifest = {
            "workbook": str(self.report_path),
            "sheets": self.sheet_names,
            "plotted_comparison": comparison["id"],
            "figures": self.figures,
        }
        self.save_json(manifest, "report_manifest.json")

        self.logger.info("Report Complete:")
        self.logger.info(f"  Workbook: {self.report_path}")
        self.logger.info(f"  Figures: {len(self.figures)}")

        return manifest

    def validate_outputs(self) -> bool:
        """Validate report outputs."""
        if not self.report_path.exists():
            self.logger.error(f"Missing workbook: {self.report_path.name}")
            return False

        if len(self.figures) == 0:
            self.logger.warning("No figures generated - selected comparison has no DEGs or terms")

        return True
