"""
TCGA Data Downloader
====================

Downloads TCGA expression / copy-number matrices and clinical data through the
GDC API, and caches them on disk so later runs load from the cache.

Cache layout:
    <cache_dir>/<TCGA-XXXX>/clinical.csv
    <cache_dir>/<TCGA-XXXX>/<data_type>/raw/*          (per-sample GDC files)
    <cache_dir>/<TCGA-XXXX>/<data_type>/expression_matrix.csv   (genes x samples)
    <cache_dir>/<TCGA-XXXX>/<data_type>/metadata.csv
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import requests
from tqdm import tqdm

from ..config import GDC_API_BASE, TCGA_CACHE_DIR

logger = logging.getLogger(__name__)


class TCGADownloader:
    """TCGA data access via the GDC API with an on-disk cache."""

    # Common names -> TCGA project codes
    CANCER_TYPES = {
        "pancreatic": "TCGA-PAAD",
        "lung": "TCGA-LUAD",
        "breast": "TCGA-BRCA",
        "colon": "TCGA-COAD",
        "liver": "TCGA-LIHC",
        "stomach": "TCGA-STAD",
        "kidney": "TCGA-KIRC",
        "prostate": "TCGA-PRAD",
        "ovarian": "TCGA-OV",
        "bladder": "TCGA-BLCA",
        "uterine": "TCGA-UCEC",
        "thyroid": "TCGA-THCA",
    }

    # Known TCGA study abbreviations (accepted bare, e.g. "BRCA")
    TCGA_CODES = {
        "ACC", "BLCA", "BRCA", "CESC", "CHOL", "COAD", "DLBC", "ESCA", "GBM",
        "HNSC", "KICH", "KIRC", "KIRP", "LAML", "LGG", "LIHC", "LUAD", "LUSC",
        "MESO", "OV", "PAAD", "PCPG", "PRAD", "READ", "SARC", "SKCM", "STAD",
        "TGCT", "THCA", "THYM", "UCEC", "UCS", "UVM",
    }

    # Sample type codes (barcode positions 14-15)
    SAMPLE_TYPES = {
        "01": "Primary Tumor",
        "02": "Recurrent Tumor",
        "03": "Primary Blood Derived Cancer",
        "06": "Metastatic",
        "10": "Blood Derived Normal",
        "11": "Solid Tissue Normal",
    }

    # data_type -> GDC (data_type, workflow_type)
    GDC_QUERIES = {
        "RNASeq": ("Gene Expression Quantification", "STAR - Counts"),
        "CNV": ("Gene Level Copy Number", "ABSOLUTE LiftOver"),
    }

    CLINICAL_FIELDS = [
        "submitter_id",
        "demographic.race",
        "demographic.ethnicity",
        "demographic.gender",
        "demographic.vital_status",
        "demographic.days_to_death",
        "diagnoses.age_at_diagnosis",
        "diagnoses.ajcc_pathologic_stage",
        "diagnoses.primary_diagnosis",
        "diagnoses.days_to_last_follow_up",
    ]

    def __init__(self, cache_dir: Optional[Path] = None, api_base: str = GDC_API_BASE):
        """
        Args:
            cache_dir: Directory holding downloaded data
            api_base: GDC API root URL
        """
        self.cache_dir = Path(cache_dir or TCGA_CACHE_DIR)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.api_base = api_base.rstrip("/")

    def get_project_code(self, cancer_type: str) -> str:
        """Return the TCGA project code for a cancer type."""
        cancer_type_lower = cancer_type.lower()

        if cancer_type_lower in self.CANCER_TYPES:
            return self.CANCER_TYPES[cancer_type_lower]

        if cancer_type.upper().startswith("TCGA-"):
            return cancer_type.upper()

        if cancer_type.upper() in self.TCGA_CODES:
            return f"TCGA-{cancer_type.upper()}"

        raise ValueError(f"Unknown cancer type: {cancer_type}. "
                         f"Available: {list(self.CANCER_TYPES.keys())} or a TCGA code")

    def project_dir(self, cancer_type: str) -> Path:
        return self.cache_dir / self.get_project_code(cancer_type)

    def data_dir(self, cancer_type: str, data_type: str) -> Path:
        return self.project_dir(cancer_type) / data_type

    # ------------------------------------------------------------------
    # GDC queries
    # ------------------------------------------------------------------

    def _query_files(self, project: str, data_type: str, limit: int = 1000) -> List[Dict]:
        """List open-access files of one data type for a project."""
        if data_type not in self.GDC_QUERIES:
            raise ValueError(f"Unsupported data type for download: {data_type}")
        gdc_data_type, workflow = self.GDC_QUERIES[data_type]

        filters = {
            "op": "and",
            "content": [
                {"op": "=", "content": {"field": "cases.project.project_id", "value": project}},
                {"op": "=", "content": {"field": "data_type", "value": gdc_data_type}},
                {"op": "=", "content": {"field": "analysis.workflow_type", "value": workflow}},
                {"op": "=", "content": {"field": "access", "value": "open"}},
            ]
        }

        params = {
            "filters": json.dumps(filters),
            "fields": "file_id,file_name,cases.case_id,cases.submitter_id,"
                      "cases.samples.sample_type,cases.samples.submitter_id",
            "format": "JSON",
            "size": limit,
        }

        response = requests.get(f"{self.api_base}/files", params=params, timeout=60)
        response.raise_for_status()

        data = response.json()
        return data.get("data", {}).get("hits", [])

    def _query_clinical(self, project: str, limit: int = 5000) -> List[Dict]:
        """List case-level clinical records for a project."""
        filters = {
            "op": "=",
            "content": {"field": "project.project_id", "value": project},
        }
        params = {
            "filters": json.dumps(filters),
            "fields": ",".join(self.CLINICAL_FIELDS),
            "format": "JSON",
            "size": limit,
        }

        response = requests.get(f"{self.api_base}/cases", params=params, timeout=60)
        response.raise_for_status()

        return response.json().get("data", {}).get("hits", [])

    def _download_file(self, file_id: str, output_path: Path) -> bool:
        """Download a single file."""
        try:
            url = f"{self.api_base}/data/{file_id}"
            response = requests.get(url, stream=True, timeout=120)
            response.raise_for_status()

            with open(output_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=8192):
                    f.write(chunk)
            return True
        except requests.RequestException as e:
            logger.error(f"Failed to download {file_id}: {e}")
            if output_path.exists():
                output_path.unlink()
            return False

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_counts_file(file_path: Path) -> pd.Series:
        """Parse a STAR counts file into gene_name -> unstranded count."""
        df = pd.read_csv(file_path, sep='\t', comment='#')
        # Drop the N_unmapped / N_multimapping / ... summary rows
        df = df[~df['gene_id'].astype(str).str.startswith('N_')]
        df = df.dropna(subset=['gene_name'])
        return df.groupby('gene_name')['unstranded'].sum()

    @staticmethod
    def _parse_copy_number_file(file_path: Path) -> pd.Series:
        """Parse a gene-level copy number file into gene_name -> copy number."""
        df = pd.read_csv(file_path, sep='\t', comment='#')
        df = df.dropna(subset=['gene_name', 'copy_number'])
        return df.groupby('gene_name')['copy_number'].mean()

    def _parse_file(self, file_path: Path, data_type: str) -> pd.Series:
        if data_type == "RNASeq":
            return self._parse_counts_file(file_path)
        return self._parse_copy_number_file(file_path)

    @staticmethod
    def get_sample_type(barcode: str) -> str:
        """Sample type code from a barcode (e.g. TCGA-XX-XXXX-01A -> "01")."""
        parts = str(barcode).split('-')
        if len(parts) >= 4 and len(parts[3]) >= 2:
            return parts[3][:2]
        return "unknown"

    @staticmethod
    def patient_barcode(barcode: str) -> str:
        """Patient part of a barcode (e.g. TCGA-XX-XXXX-01A-11R -> TCGA-XX-XXXX)."""
        return '-'.join(str(barcode).split('-')[:3])

    @staticmethod
    def _flatten_case(case: Dict[str, Any]) -> Dict[str, Any]:
        """One flat clinical row per case (first diagnosis only)."""
        row = {"patient_barcode": case.get("submitter_id")}

        demographic = case.get("demographic") or {}
        for key, value in demographic.items():
            row[key] = value

        diagnoses = case.get("diagnoses") or []
        if diagnoses:
            for key, value in diagnoses[0].items():
                row[key] = value

        return row

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def download_clinical(self, cancer_type: str) -> pd.DataFrame:
        """Download clinical data and write it to the cache."""
        project = self.get_project_code(cancer_type)
        logger.info(f"Downloading clinical data for {project}...")

        cases = self._query_clinical(project)
        if not cases:
            raise ValueError(f"No clinical records found for {project}")

        clinical = pd.DataFrame([self._flatten_case(c) for c in cases])
        clinical = clinical.dropna(subset=["patient_barcode"])
        clinical = clinical.drop_duplicates("patient_barcode").set_index("patient_barcode")

        project_dir = self.project_dir(cancer_type)
        project_dir.mkdir(parents=True, exist_ok=True)
        clinical.to_csv(project_dir / "clinical.csv")

        logger.info(f"Clinical data: {len(clinical)} patients, {len(clinical.columns)} fields")
        return clinical

    def download_project(
        self,
        cancer_type: str,
        data_type: str = "RNASeq",
        max_samples: int = 0,
        n_workers: int = 4
    ) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """
        Download a project's molecular and clinical data.

        Args:
            cancer_type: e.g. "BRCA", "TCGA-BRCA" or "breast"
            data_type: "RNASeq" or "CNV"
            max_samples: Maximum number of files (0 = all)
            n_workers: Parallel download workers

        Returns:
            (matrix, metadata, clinical) tuple
        """
        project = self.get_project_code(cancer_type)
        logger.info(f"Downloading {project} {data_type} data...")

        data_dir = self.data_dir(cancer_type, data_type)
        raw_dir = data_dir / "raw"
        raw_dir.mkdir(parents=True, exist_ok=True)

        query_limit = 5000 if max_samples == 0 else max_samples * 2
        logger.info(f"Querying GDC API for available files (limit={query_limit})...")
        files = self._query_files(project, data_type, limit=query_limit)

        if not files:
            raise ValueError(f"No {data_type} files found for {project}")

        logger.info(f"Found {len(files)} files")

        download_tasks = []
        sample_info = []

        for file_info in files:
            cases = file_info.get('cases', [])
            if not cases:
                continue

            case = cases[0]
            samples = case.get('samples', [])
            if samples:
                sample_type = samples[0].get('sample_type', 'Unknown')
                barcode = samples[0].get('submitter_id') or case.get('submitter_id', '')
            else:
                sample_type = 'Unknown'
                barcode = case.get('submitter_id', '')

            output_path = raw_dir / file_info['file_name']
            download_tasks.append({
                'file_id': file_info['file_id'],
                'file_name': file_info['file_name'],
                'output_path': output_path,
            })
            sample_info.append({
                'file_name': file_info['file_name'],
                'barcode': barcode,
                'patient_barcode': self.patient_barcode(barcode),
                'sample_type': sample_type,
                'sample_type_code': self.get_sample_type(barcode),
            })

            if max_samples > 0 and len(download_tasks) >= max_samples:
                break

        logger.info(f"Downloading {len(download_tasks)} files...")

        downloaded_files = [t['file_name'] for t in download_tasks if t['output_path'].exists()]
        pending = [t for t in download_tasks if not t['output_path'].exists()]

        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {
                executor.submit(self._download_file, task['file_id'], task['output_path']): task
                for task in pending
            }
            for future in tqdm(as_completed(futures), total=len(futures), desc="Downloading"):
                task = futures[future]
                if future.result():
                    downloaded_files.append(task['file_name'])

        logger.info(f"Downloaded {len(downloaded_files)} files")

        metadata = pd.DataFrame(sample_info)
        metadata = metadata[metadata['file_name'].isin(downloaded_files)]
        metadata.to_csv(data_dir / "metadata.csv", index=False)

        logger.info("Building matrix...")
        matrix = self._build_matrix(raw_dir, metadata, data_type)
        matrix.to_csv(data_dir / "expression_matrix.csv")
        logger.info(f"Matrix shape: {matrix.shape}")

        clinical = self.download_clinical(cancer_type)

        return matrix, metadata, clinical

    def _build_matrix(self, raw_dir: Path, metadata: pd.DataFrame, data_type: str) -> pd.DataFrame:
        """Combine per-sample files into one genes x samples matrix."""
        columns = {}

        for _, row in tqdm(metadata.iterrows(), total=len(metadata), desc="Parsing files"):
            file_path = raw_dir / row['file_name']
            if not file_path.exists():
                continue
            try:
                values = self._parse_file(file_path, data_type)
            except (pd.errors.ParserError, KeyError) as e:
                logger.error(f"Failed to parse {file_path}: {e}")
                continue
            if values.empty:
                continue
            barcode = row['barcode']
            if barcode in columns:
                # Re-sequenced aliquots of one sample: first file wins
                logger.warning(f"Duplicate sample {barcode}: keeping the first file, "
                               f"skipping {row['file_name']}")
                continue
            columns[barcode] = values

        if not columns:
            raise ValueError("No valid data files found")

        matrix = pd.DataFrame(columns)
        matrix.index.name = "gene_id"

        if data_type == "RNASeq":
            matrix = matrix.fillna(0).astype(int)

        return matrix

    def load_project(
        self,
        cancer_type: str,
        data_type: str = "RNASeq"
    ) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """Load already-downloaded project data from the cache."""
        project_dir = self.project_dir(cancer_type)
        data_dir = self.data_dir(cancer_type, data_type)

        matrix_path = data_dir / "expression_matrix.csv"
        clinical_path = project_dir / "clinical.csv"
        if not matrix_path.exists() or not clinical_path.exists():
            raise FileNotFoundError(f"Project data not found in cache: {data_dir}")

        matrix = pd.read_csv(matrix_path, index_col=0)
        metadata_path = data_dir / "metadata.csv"
        if metadata_path.exists():
            metadata = pd.read_csv(metadata_path)
        else:
            metadata = pd.DataFrame({"barcode": matrix.columns})
        clinical = pd.read_csv(clinical_path, index_col=0)

        return matrix, metadata, clinical

    def is_cached(self, cancer_type: str, data_type: str = "RNASeq") -> bool:
        return ((self.data_dir(cancer_type, data_type) / "expression_matrix.csv").exists()
                and (self.project_dir(cancer_type) / "clinical.csv").exists())

    def get_data(
        self,
        cancer_type: str,
        data_type: str = "RNASeq",
        force_download: bool = False,
        max_samples: int = 0,
        n_workers: int = 4
    ) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """Load from the cache if present, otherwise download."""
        if not force_download and self.is_cached(cancer_type, data_type):
            logger.info(f"Loading {self.get_project_code(cancer_type)} {data_type} from cache")
            return self.load_project(cancer_type, data_type)

        return self.download_project(cancer_type, data_type,
                                     max_samples=max_samples, n_workers=n_workers)
