"""
Pipeline agent tests on the synthetic TCGA cache
"""
import json
import os

import gseapy
import pandas as pd
import pytest
from openpyxl import load_workbook

from tcga_cohort_deg.agents import CohortAgent, DataAgent, DEGAgent, EnrichmentAgent, ReportAgent
from tcga_cohort_deg.agents.agent0_data import join_clinical, select_samples
from tcga_cohort_deg.agents.agent4_report import TABLE_START_ROW, sheet_name

requires_r = pytest.mark.skipif(
    os.system("which R > /dev/null 2>&1") != 0,
    reason="R not installed"
)

HIGHER_IN_WHITE = {f"GENE{i}" for i in range(25)}
LOWER_IN_WHITE = {f"GENE{i}" for i in range(25, 50)}


@pytest.fixture
def data_dir(tmp_path, test_config):
    """Work directory after Agent 0."""
    work = tmp_path / "work"
    DataAgent(work, work, test_config).execute()
    return work


@pytest.fixture
def cohort_dir(data_dir, test_config):
    CohortAgent(data_dir, data_dir, test_config).execute()
    return data_dir


@pytest.fixture
def deg_dir(cohort_dir, test_config):
    DEGAgent(cohort_dir, cohort_dir, test_config).execute()
    return cohort_dir


@pytest.fixture
def enrichment_dir(deg_dir, test_config, fake_enrichr):
    EnrichmentAgent(deg_dir, deg_dir, test_config).execute()
    return deg_dir


class TestSampleSelection:
    """Test cases for sample-type selection and clinical joins."""

    def test_select_samples(self):
        matrix = pd.DataFrame(0, index=["G"], columns=[
            "TCGA-AA-0001-01B-11R", "TCGA-AA-0001-01A-11R", "TCGA-AA-0001-11A-11R",
            "TCGA-AA-0002-06A-11R", "TCGA-AA-0003-01A-11R",
        ])
        selected = select_samples(matrix, ["01"])
        assert list(selected.columns) == ["TCGA-AA-0001-01A-11R", "TCGA-AA-0003-01A-11R"]

        selected = select_samples(matrix, ["01", "06"])
        assert "TCGA-AA-0002-06A-11R" in selected.columns

    def test_join_clinical(self):
        clinical = pd.DataFrame({"race": ["white", "asian"]},
                                index=pd.Index(["TCGA-AA-0001", "TCGA-AA-0002"],
                                               name="patient_barcode"))
        joined = join_clinical(["TCGA-AA-0002-01A", "TCGA-AA-0009-01A"], clinical)

        assert list(joined["sample_id"]) == ["TCGA-AA-0002-01A", "TCGA-AA-0009-01A"]
        assert joined.loc[0, "race"] == "asian"
        assert pd.isna(joined.loc[1, "race"])


class TestAgent0Data:
    """Test cases for Agent 0 - Data Acquisition."""

    def test_outputs(self, data_dir):
        expr = pd.read_csv(data_dir / "expression_matrix.csv", index_col=0)
        clinical = pd.read_csv(data_dir / "clinical_data.csv")

        # 74 patients, normals dropped
        assert expr.shape == (300, 74)
        assert all("-01A-" in c for c in expr.columns)
        assert list(clinical["sample_id"]) == list(expr.columns)
        assert {"sample_id", "patient_barcode", "race", "gender"} <= set(clinical.columns)

        assert (data_dir / "meta_agent0_data.json").exists()
        assert (data_dir / "log_agent0_data.txt").exists()

    def test_unknown_cancer_type(self, tmp_path, test_config):
        config = {**test_config, "cancer_type": "martian"}
        with pytest.raises(ValueError, match="Input validation failed"):
            DataAgent(tmp_path, tmp_path, config).execute()

    def test_uncached_log_data(self, tmp_path, test_config):
        config = {**test_config, "data_type": "log"}
        with pytest.raises(ValueError, match="Input validation failed"):
            DataAgent(tmp_path, tmp_path, config).execute()


class TestAgent2DEG:
    """Test cases for Agent 2 - DEG Analysis."""

    def test_summary(self, deg_dir):
        summary = pd.read_csv(deg_dir / "deg_summary.csv")
        assert list(summary["comparison_id"]) == [
            "01_asian_vs_black_or_african_american",
            "02_asian_vs_white",
            "03_black_or_african_american_vs_white",
        ]
        assert list(summary.columns) == ["comparison_id", "group_a", "group_b", "n_a", "n_b",
                                         "genes_tested", "up_count", "down_count"]
        assert (summary["genes_tested"] > 250).all()

    def test_planted_genes(self, deg_dir):
        """Genes raised in the white group are 'down' when white is group B."""
        sig = pd.read_csv(deg_dir / "deg_02_asian_vs_white_significant.csv")
        down = set(sig.loc[sig["direction"] == "down", "gene_id"])
        up = set(sig.loc[sig["direction"] == "up", "gene_id"])

        assert len(HIGHER_IN_WHITE & down) >= 20
        assert len(LOWER_IN_WHITE & up) >= 20
        assert not (HIGHER_IN_WHITE & up)
        assert not (LOWER_IN_WHITE & down)

    def test_unplanted_comparison_quieter(self, deg_dir):
        summary = pd.read_csv(deg_dir / "deg_summary.csv").set_index("comparison_id")
        total = summary["up_count"] + summary["down_count"]
        assert total["01_asian_vs_black_or_african_american"] < total["02_asian_vs_white"]

    def test_significant_table(self, deg_dir, test_config):
        for cid in ["01_asian_vs_black_or_african_american", "02_asian_vs_white",
                    "03_black_or_african_american_vs_white"]:
            sig = pd.read_csv(deg_dir / f"deg_{cid}_significant.csv")
            full = pd.read_csv(deg_dir / f"deg_{cid}_all.csv")

            assert not sig["gene_id"].duplicated().any()
            assert (sig["adj.P.Val"] < 0.05).all()
            assert ((sig["direction"] == "up") == (sig["t"] > 0)).all()
            assert (full["adj.P.Val"] >= full["P.Value"] - 1e-15).all()

            expr = pd.read_csv(deg_dir / f"deg_{cid}_expression.csv", index_col=0)
            assert list(expr.index) == list(sig["gene_id"])

    def test_rerun_is_identical(self, deg_dir, test_config, tmp_path):
        rerun = tmp_path / "rerun"
        rerun.mkdir()
        for name in ["expression_matrix.csv", "comparisons.json"]:
            (rerun / name).write_bytes((deg_dir / name).read_bytes())
        DEGAgent(rerun, rerun, test_config).execute()

        first = pd.read_csv(deg_dir / "deg_02_asian_vs_white_all.csv")
        second = pd.read_csv(rerun / "deg_02_asian_vs_white_all.csv")
        pd.testing.assert_frame_equal(first, second)

    @requires_r
    def test_r_engine_matches_native(self, cohort_dir, test_config, tmp_path):
        pytest.importorskip("rpy2")
        r_dir = tmp_path / "r_engine"
        r_dir.mkdir()
        for name in ["expression_matrix.csv", "comparisons.json"]:
            (r_dir / name).write_bytes((cohort_dir / name).read_bytes())

        try:
            DEGAgent(r_dir, r_dir, {**test_config, "engine": "limma"}).execute()
        except Exception as e:
            pytest.skip(f"limma not available: {e}")

        DEGAgent(cohort_dir, cohort_dir, test_config).execute()
        native = pd.read_csv(cohort_dir / "deg_02_asian_vs_white_all.csv").set_index("gene_id")
        r_table = pd.read_csv(r_dir / "deg_02_asian_vs_white_all.csv").set_index("gene_id")

        pd.testing.assert_series_equal(native["logFC"], r_table.loc[native.index, "logFC"],
                                       check_exact=False, atol=1e-6)
        pd.testing.assert_series_equal(native["t"], r_table.loc[native.index, "t"],
                                       check_exact=False, rtol=1e-3)


class TestAgent3Enrichment:
    """Test cases for Agent 3 - Enrichment."""

    def test_summary_and_terms(self, enrichment_dir, fake_enrichr):
        summary = pd.read_csv(enrichment_dir / "enrichment_summary.csv")
        assert list(summary.columns) == ["comparison_id", "direction", "library",
                                         "n_genes", "significant_terms", "status"]
        assert set(summary["status"]) <= {"ok", "skipped"}

        ran = summary[summary["status"] == "ok"]
        assert len(ran) == len(fake_enrichr.calls)
        assert (ran["significant_terms"] == 1).all()

        terms = pd.read_csv(enrichment_dir / "enrichment_02_asian_vs_white.csv")
        assert set(terms["term_name"]) == {"Planted pathway"}
        assert (terms["padj"] < 0.05).all()
        assert set(terms["direction"]) == {"up", "down"}
        assert set(terms["library"]) == {"GO_Biological_Process_2023", "KEGG_2021_Human"}

    def test_gene_lists_match_direction(self, enrichment_dir, fake_enrichr):
        sig = pd.read_csv(enrichment_dir / "deg_02_asian_vs_white_significant.csv")
        down = sig.loc[sig["direction"] == "down", "gene_id"].tolist()
        assert any(call["gene_list"] == down for call in fake_enrichr.calls)

    def test_small_lists_skipped(self, deg_dir, test_config, fake_enrichr):
        config = {**test_config, "min_genes_for_enrichment": 10_000}
        EnrichmentAgent(deg_dir, deg_dir, config).execute()

        summary = pd.read_csv(deg_dir / "enrichment_summary.csv")
        assert (summary["status"] == "skipped").all()
        assert fake_enrichr.calls == []
        assert len(pd.read_csv(deg_dir / "enrichment_02_asian_vs_white.csv")) == 0

    def test_failed_query_recorded(self, deg_dir, test_config, monkeypatch):
        def broken_enrichr(**kwargs):
            raise ConnectionError("Enrichr unreachable")

        monkeypatch.setattr(gseapy, "enrichr", broken_enrichr)
        results = EnrichmentAgent(deg_dir, deg_dir, test_config).execute()

        summary = pd.read_csv(deg_dir / "enrichment_summary.csv")
        assert "failed" in set(summary["status"])
        assert results["failed_queries"]
        assert "Enrichr unreachable" in results["failed_queries"][0]["error"]

    def test_local_gmt_library(self, deg_dir, test_config, fake_enrichr, tmp_path):
        gmt = tmp_path / "planted.gmt"
        gmt.write_text("PLANTED_UP\tna\t" + "\t".join(sorted(HIGHER_IN_WHITE)) + "\n"
                       "PLANTED_DOWN\tna\t" + "\t".join(sorted(LOWER_IN_WHITE)) + "\n")
        config = {**test_config, "enrichr_libraries": [str(gmt)]}
        EnrichmentAgent(deg_dir, deg_dir, config).execute()

        assert fake_enrichr.calls
        call = fake_enrichr.calls[0]
        assert isinstance(call["gene_sets"], dict)
        assert set(call["gene_sets"]) == {"PLANTED_UP", "PLANTED_DOWN"}
        assert call["background"] and len(call["background"]) > 250

        summary = pd.read_csv(deg_dir / "enrichment_summary.csv")
        assert set(summary["library"]) == {"planted"}

    def test_missing_gmt_file(self, deg_dir, test_config, tmp_path):
        config = {**test_config, "enrichr_libraries": [str(tmp_path / "missing.gmt")]}
        with pytest.raises(ValueError, match="Input validation failed"):
            EnrichmentAgent(deg_dir, deg_dir, config).execute()


class TestAgent4Report:
    """Test cases for Agent 4 - Report."""

    def test_workbook_layout(self, enrichment_dir, test_config):
        ReportAgent(enrichment_dir, enrichment_dir, test_config).execute()

        wb = load_workbook(enrichment_dir / "cohort_deg_report.xlsx")
        assert wb.sheetnames == [
            "1 Summary",
            sheet_name(2, "DEG asian vs black or african american"),
            sheet_name(3, "Enrichment asian vs black or african american"),
            "4 DEG asian vs white",
            "5 Enrichment asian vs white",
            sheet_name(6, "DEG black or african american vs white"),
            sheet_name(7, "Enrichment black or african american vs white"),
        ]
        assert all(len(name) <= 31 for name in wb.sheetnames)

        summary = wb["1 Summary"]
        assert "BRCA" in summary["A1"].value
        assert "race" in summary["A1"].value
        header_row = TABLE_START_ROW + 1
        assert summary.cell(row=header_row, column=1).value == "Comparison"
        assert summary.cell(row=header_row + 1, column=1).value == "race: asian vs black or african american"

        deg = wb["4 DEG asian vs white"]
        assert "white" in deg["A1"].value
        headers = [c.value for c in deg[header_row]]
        assert headers[:2] == ["Gene", "log2 Fold Change"]
        assert "BH-adjusted P-value" in headers
        directions = {deg.cell(row=r, column=len(headers)).value
                      for r in range(header_row + 1, deg.max_row + 1)}
        assert directions == {"Higher in asian", "Higher in white"}

    def test_figures_and_manifest(self, enrichment_dir, test_config):
        config = {**test_config, "plot_comparison": "02_asian_vs_white"}
        results = ReportAgent(enrichment_dir, enrichment_dir, config).execute()

        figures = enrichment_dir / "figures"
        assert (figures / "heatmap_02_asian_vs_white.png").exists()
        assert (figures / "enrichment_barplot_02_asian_vs_white.png").exists()

        with open(enrichment_dir / "report_manifest.json") as f:
            manifest = json.load(f)
        assert manifest["plotted_comparison"] == "02_asian_vs_white"
        assert manifest["sheets"][0] == "1 Summary"
        assert len(manifest["figures"]) == 2
        assert results["plotted_comparison"] == "02_asian_vs_white"

    def test_default_plot_comparison(self, enrichment_dir, test_config):
        results = ReportAgent(enrichment_dir, enrichment_dir, test_config).execute()

        summary = pd.read_csv(enrichment_dir / "deg_summary.csv")
        totals = (summary["up_count"] + summary["down_count"]).tolist()
        best = summary["comparison_id"].iloc[totals.index(max(totals))]
        assert results["plotted_comparison"] == best

    def test_unknown_plot_comparison(self, enrichment_dir, test_config):
        config = {**test_config, "plot_comparison": "99_nobody_vs_noone"}
        with pytest.raises(ValueError, match="plot_comparison"):
            ReportAgent(enrichment_dir, enrichment_dir, config).execute()

    def test_empty_enrichment_sheet(self, deg_dir, test_config, fake_enrichr):
        config = {**test_config, "min_genes_for_enrichment": 10_000}
        EnrichmentAgent(deg_dir, deg_dir, config).execute()
        ReportAgent(deg_dir, deg_dir, config).execute()

        wb = load_workbook(deg_dir / "cohort_deg_report.xlsx")
        ws = wb["5 Enrichment asian vs white"]
        assert ws.cell(row=TABLE_START_ROW + 2, column=1).value == "No entries passed the cutoff."
