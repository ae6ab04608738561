"""
TCGA downloader unit tests (GDC API mocked)
"""
import json
import logging

import pandas as pd
import pytest
import requests

from tcga_cohort_deg.data import tcga_downloader
from tcga_cohort_deg.data.tcga_downloader import TCGADownloader

STAR_HEADER = "# gene-model: GENCODE v36\n" \
              "gene_id\tgene_name\tgene_type\tunstranded\tstranded_first\tstranded_second\n"


def star_counts(rows):
    lines = [STAR_HEADER]
    lines.append("N_unmapped\t\t\t1000\t1000\t1000\n")
    lines.append("N_multimapping\t\t\t2000\t2000\t2000\n")
    for gene_id, gene_name, count in rows:
        lines.append(f"{gene_id}\t{gene_name}\tprotein_coding\t{count}\t0\t0\n")
    return "".join(lines).encode()


class FakeResponse:
    def __init__(self, payload=None, content=b"", status=200):
        self.payload = payload
        self.content = content
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload

    def iter_content(self, chunk_size=8192):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]


class FakeGDC:
    """Routes requests.get calls to canned /files, /cases and /data responses."""

    def __init__(self, files, cases, contents, failing=()):
        self.files = files
        self.cases = cases
        self.contents = contents
        self.failing = set(failing)
        self.calls = []

    def __call__(self, url, params=None, stream=False, timeout=None):
        self.calls.append((url, params))
        if url.endswith("/files"):
            return FakeResponse({"data": {"hits": self.files}})
        if url.endswith("/cases"):
            return FakeResponse({"data": {"hits": self.cases}})
        file_id = url.rsplit("/", 1)[-1]
        if file_id in self.failing:
            return FakeResponse(status=500)
        return FakeResponse(content=self.contents[file_id])


@pytest.fixture
def fake_gdc(monkeypatch):
    files = []
    contents = {}
    barcodes = ["TCGA-A1-0001-01A-11R-A00Z-07", "TCGA-A1-0002-01A-11R-A00Z-07",
                "TCGA-A1-0002-11A-11R-A00Z-07"]
    for i, barcode in enumerate(barcodes):
        file_id = f"file-{i}"
        files.append({
            "file_id": file_id,
            "file_name": f"{file_id}.rna_seq.augmented_star_gene_counts.tsv",
            "cases": [{
                "case_id": f"case-{i}",
                "submitter_id": TCGADownloader.patient_barcode(barcode),
                "samples": [{"sample_type": "Primary Tumor", "submitter_id": barcode}],
            }],
        })
        contents[file_id] = star_counts([
            ("ENSG0001.1", "TP53", 100 + i),
            ("ENSG0002.1", "BRCA1", 50 * (i + 1)),
            ("ENSG0003.1", "BRCA1", 5),  # second Ensembl id for the same symbol
        ])

    cases = [
        {"submitter_id": "TCGA-A1-0001",
         "demographic": {"race": "white", "gender": "female"},
         "diagnoses": [{"age_at_diagnosis": 20000, "ajcc_pathologic_stage": "Stage II"}]},
        {"submitter_id": "TCGA-A1-0002",
         "demographic": {"race": "asian", "gender": "female"},
         "diagnoses": []},
    ]

    gdc = FakeGDC(files, cases, contents)
    monkeypatch.setattr(tcga_downloader.requests, "get", gdc)
    return gdc


class TestBarcodes:
    """Test cases for barcode helpers."""

    def test_sample_type(self):
        assert TCGADownloader.get_sample_type("TCGA-A1-0001-01A-11R-A00Z-07") == "01"
        assert TCGADownloader.get_sample_type("TCGA-A1-0001-11A") == "11"
        assert TCGADownloader.get_sample_type("TCGA-A1-0001") == "unknown"

    def test_patient_barcode(self):
        assert TCGADownloader.patient_barcode("TCGA-A1-0001-01A-11R-A00Z-07") == "TCGA-A1-0001"
        assert TCGADownloader.patient_barcode("TCGA-A1-0001") == "TCGA-A1-0001"


class TestProjectCodes:
    """Test cases for cancer type resolution."""

    def test_project_codes(self, tmp_path):
        downloader = TCGADownloader(cache_dir=tmp_path)
        assert downloader.get_project_code("BRCA") == "TCGA-BRCA"
        assert downloader.get_project_code("brca") == "TCGA-BRCA"
        assert downloader.get_project_code("TCGA-LUAD") == "TCGA-LUAD"
        assert downloader.get_project_code("breast") == "TCGA-BRCA"

    def test_unknown_cancer_type(self, tmp_path):
        downloader = TCGADownloader(cache_dir=tmp_path)
        with pytest.raises(ValueError):
            downloader.get_project_code("martian")

    def test_cache_paths(self, tmp_path):
        downloader = TCGADownloader(cache_dir=tmp_path)
        assert downloader.data_dir("BRCA", "RNASeq") == tmp_path / "TCGA-BRCA" / "RNASeq"


class TestParsing:
    """Test cases for GDC file parsing."""

    def test_counts_file(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_bytes(star_counts([("ENSG1", "TP53", 10), ("ENSG2", "EGFR", 3),
                                      ("ENSG3", "EGFR", 4)]))
        counts = TCGADownloader._parse_counts_file(path)

        assert counts["TP53"] == 10
        assert counts["EGFR"] == 7
        assert not any(str(g).startswith("N_") for g in counts.index)

    def test_copy_number_file(self, tmp_path):
        path = tmp_path / "cnv.tsv"
        path.write_text("gene_id\tgene_name\tchromosome\tstart\tend\tcopy_number\n"
                        "ENSG1\tTP53\tchr17\t1\t2\t2\n"
                        "ENSG2\tMYC\tchr8\t1\t2\t5\n"
                        "ENSG3\tMYC\tchr8\t3\t4\t3\n"
                        "ENSG4\tKRAS\tchr12\t1\t2\t\n")
        cnv = TCGADownloader._parse_copy_number_file(path)

        assert cnv["TP53"] == 2
        assert cnv["MYC"] == 4
        assert "KRAS" not in cnv.index

    def test_duplicate_barcode_keeps_first_file(self, tmp_path, caplog):
        """Two files for one sample (re-sequenced aliquot) do not overwrite each other."""
        (tmp_path / "first.tsv").write_bytes(star_counts([("ENSG1", "TP53", 10)]))
        (tmp_path / "second.tsv").write_bytes(star_counts([("ENSG1", "TP53", 99)]))
        (tmp_path / "other.tsv").write_bytes(star_counts([("ENSG1", "TP53", 5)]))
        metadata = pd.DataFrame({
            "file_name": ["first.tsv", "second.tsv", "other.tsv"],
            "barcode": ["TCGA-AA-0001-01A", "TCGA-AA-0001-01A", "TCGA-AA-0002-01A"],
        })

        with caplog.at_level(logging.WARNING):
            matrix = TCGADownloader(cache_dir=tmp_path)._build_matrix(tmp_path, metadata, "RNASeq")

        assert list(matrix.columns) == ["TCGA-AA-0001-01A", "TCGA-AA-0002-01A"]
        assert matrix.loc["TP53", "TCGA-AA-0001-01A"] == 10
        assert "Duplicate sample TCGA-AA-0001-01A" in caplog.text


class TestGDCQueries:
    """Test cases for GDC API access."""

    def test_query_files_filters(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path, api_base="https://gdc.test/")
        hits = downloader._query_files("TCGA-BRCA", "RNASeq", limit=10)

        assert len(hits) == 3
        url, params = fake_gdc.calls[0]
        assert url == "https://gdc.test/files"
        filters = json.loads(params["filters"])
        values = {c["content"]["field"]: c["content"]["value"] for c in filters["content"]}
        assert values["cases.project.project_id"] == "TCGA-BRCA"
        assert values["analysis.workflow_type"] == "STAR - Counts"
        assert params["size"] == 10

    def test_query_unsupported_type(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path)
        with pytest.raises(ValueError):
            downloader._query_files("TCGA-BRCA", "log")

    def test_failed_download_cleans_up(self, tmp_path, monkeypatch):
        gdc = FakeGDC([], [], {}, failing={"bad"})
        monkeypatch.setattr(tcga_downloader.requests, "get", gdc)
        downloader = TCGADownloader(cache_dir=tmp_path)

        output_path = tmp_path / "bad.tsv"
        assert downloader._download_file("bad", output_path) is False
        assert not output_path.exists()

    def test_download_project(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path)
        matrix, metadata, clinical = downloader.download_project("BRCA", "RNASeq", n_workers=2)

        assert matrix.shape == (2, 3)
        assert matrix.loc["BRCA1", "TCGA-A1-0001-01A-11R-A00Z-07"] == 55
        assert set(metadata["sample_type_code"]) == {"01", "11"}

        assert clinical.loc["TCGA-A1-0001", "race"] == "white"
        assert clinical.loc["TCGA-A1-0001", "ajcc_pathologic_stage"] == "Stage II"
        assert clinical.loc["TCGA-A1-0002", "race"] == "asian"

        assert downloader.is_cached("BRCA", "RNASeq")
        assert (tmp_path / "TCGA-BRCA" / "clinical.csv").exists()
        assert (tmp_path / "TCGA-BRCA" / "RNASeq" / "metadata.csv").exists()

    def test_max_samples(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path)
        matrix, metadata, _ = downloader.download_project("BRCA", "RNASeq", max_samples=2)
        assert matrix.shape[1] == 2
        assert len(metadata) == 2

    def test_no_files_found(self, tmp_path, monkeypatch):
        monkeypatch.setattr(tcga_downloader.requests, "get", FakeGDC([], [], {}))
        downloader = TCGADownloader(cache_dir=tmp_path)
        with pytest.raises(ValueError):
            downloader.download_project("BRCA", "RNASeq")


class TestCache:
    """Test cases for cache loading."""

    def test_get_data_uses_cache(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path)
        downloader.download_project("BRCA", "RNASeq")
        n_calls = len(fake_gdc.calls)

        matrix, _, clinical = downloader.get_data("BRCA", "RNASeq")
        assert len(fake_gdc.calls) == n_calls
        assert matrix.shape == (2, 3)
        assert "TCGA-A1-0002" in clinical.index

    def test_force_download(self, tmp_path, fake_gdc):
        downloader = TCGADownloader(cache_dir=tmp_path)
        downloader.download_project("BRCA", "RNASeq")
        n_calls = len(fake_gdc.calls)

        downloader.get_data("BRCA", "RNASeq", force_download=True)
        # Raw files already on disk are not fetched again, but the queries are
        assert len(fake_gdc.calls) == n_calls + 2

    def test_missing_cache(self, tmp_path):
        downloader = TCGADownloader(cache_dir=tmp_path)
        assert not downloader.is_cached("BRCA")
        with pytest.raises(FileNotFoundError):
            downloader.load_project("BRCA")

    def test_sample_cache_loads(self, sample_cache):
        downloader = TCGADownloader(cache_dir=sample_cache)
        matrix, metadata, clinical = downloader.load_project("BRCA")

        assert matrix.shape[0] == 300
        assert "race" in clinical.columns
        assert set(metadata["sample_type_code"].astype(str).str.zfill(2)) == {"01", "11"}
