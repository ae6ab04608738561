"""
Cohort DEG Pipeline Orchestrator

Coordinates the execution of the analysis agents inside a timestamped run
directory.

Usage:
    from tcga_cohort_deg import CohortDEGPipeline

    pipeline = CohortDEGPipeline(
        output_dir="./results",
        config={"cancer_type": "BRCA", "clinical_attribute": "race"}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent0_data")
    pipeline.run_from("agent2_deg")  # Resume from agent 2

Agent order:
    Data -> Cohort -> DEG -> Enrichment -> Report
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .agents import CohortAgent, DataAgent, DEGAgent, EnrichmentAgent, ReportAgent
from .config import LOG_FORMAT, merge_config
from .data.tcga_downloader import TCGADownloader
from .utils.base_agent import AgentResult


class CohortDEGPipeline:
    """Orchestrator for the cohort differential-expression pipeline."""

    AGENT_ORDER = [
        "agent0_data",
        "agent1_cohort",
        "agent2_deg",
        "agent3_enrichment",
        "agent4_report",
    ]

    AGENT_CLASSES = {
        "agent0_data": DataAgent,
        "agent1_cohort": CohortAgent,
        "agent2_deg": DEGAgent,
        "agent3_enrichment": EnrichmentAgent,
        "agent4_report": ReportAgent,
    }

    def __init__(
        self,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_dir: Optional[Path] = None,
        downloader: Optional[TCGADownloader] = None
    ):
        self.output_dir = Path(output_dir)
        self.config = merge_config(config)
        self.downloader = downloader

        if run_dir is not None:
            self.run_dir = Path(run_dir)
            timestamp = self.run_dir.name.replace("run_", "")
        else:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.run_dir = self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        self.execution_state: Dict[str, Any] = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "errors": {},
            "agent_results": {}
        }
        self.results: Dict[str, AgentResult] = {}

    def _setup_logging(self) -> logging.Logger:
        """pipeline.log in the run directory (DEBUG) plus the console (INFO)."""
        logger = logging.getLogger("tcga_cohort_deg.pipeline")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        formatter = logging.Formatter(LOG_FORMAT)
        for handler, level in [
            (logging.FileHandler(self.run_dir / "pipeline.log", mode='w', encoding='utf-8'), logging.DEBUG),
            (logging.StreamHandler(), logging.INFO),
        ]:
            handler.setLevel(level)
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    @property
    def accumulated_dir(self) -> Path:
        return self.run_dir / "accumulated"

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Hand an agent's tables and JSON (not its meta record) to the agents after it."""
        self.accumulated_dir.mkdir(exist_ok=True)
        agent_output_dir = self.run_dir / agent_name

        handoff = [p for p in sorted(agent_output_dir.iterdir())
                   if p.suffix in (".csv", ".json") and not p.name.startswith("meta_")]
        for path in handoff:
            shutil.copy2(path, self.accumulated_dir / path.name)
        self.logger.debug(f"{agent_name} handed off {[p.name for p in handoff]}")

    def _check_dependencies(self, agent_name: str) -> None:
        missing = [name for name in self.AGENT_CLASSES[agent_name].REQUIRED_INPUTS
                   if not (self.accumulated_dir / name).exists()]
        if missing:
            raise FileNotFoundError(
                f"{agent_name} needs {missing}; run the earlier agents first"
            )

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run one agent against the accumulated directory and record its outcome."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        agent_config = merge_config({**self.config, **(config_override or {})})
        self.accumulated_dir.mkdir(exist_ok=True)
        self._check_dependencies(agent_name)

        output_dir = self.run_dir / agent_name
        AgentClass = self.AGENT_CLASSES[agent_name]
        kwargs = {}
        if agent_name == "agent0_data" and self.downloader is not None:
            kwargs["downloader"] = self.downloader

        agent = AgentClass(
            input_dir=self.accumulated_dir,
            output_dir=output_dir,
            config=agent_config,
            **kwargs
        )

        try:
            results = agent.execute()
        except Exception as e:
            self.logger.error(f"{agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.execution_state["errors"][agent_name] = str(e)
            self.results[agent_name] = AgentResult(agent_name, False, output_dir, {}, [str(e)])
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        self.results[agent_name] = AgentResult(agent_name, True, output_dir, results)

        self._accumulate_outputs(agent_name)

        return results

    def _run_agents(self, agents_to_run: List[str]) -> None:
        self.logger.info(f"Agent sequence: {' -> '.join(agents_to_run)}")
        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Stopping: {agent_name} raised {type(e).__name__}")
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run every agent in order, or up to and including ``stop_after``."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting TCGA Cohort DEG Pipeline")
        self.logger.info(f"Cancer type: {self.config['cancer_type']}, "
                         f"attribute: {self.config['clinical_attribute']}")
        self.logger.info(f"Run directory: {self.run_dir}")

        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            agents_to_run = self.AGENT_ORDER[:self.AGENT_ORDER.index(stop_after) + 1]
        else:
            agents_to_run = self.AGENT_ORDER

        self._run_agents(agents_to_run)

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()
        self._log_summary()

        return self.execution_state

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume the pipeline from a specific agent (needs an existing run_dir)."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"Resuming {self.run_dir.name} at {agent_name}")
        self._run_agents(self.AGENT_ORDER[self.AGENT_ORDER.index(agent_name):])

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()
        self._log_summary()
        return self.execution_state

    def _log_summary(self) -> None:
        state = self.execution_state
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Finished {len(state['completed_agents'])}/{len(self.AGENT_ORDER)} agents"
                         + (f", failed: {state['failed_agents']}" if state["failed_agents"] else ""))
        self.logger.info(f"Run directory: {self.run_dir}")
        self.logger.info(f"{'='*60}")

    def _save_execution_state(self) -> None:
        """pipeline_state.json: completed and failed agents, errors, per-agent results."""
        with open(self.run_dir / "pipeline_state.json", 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_cache(
    cache_dir: Path,
    cancer_type: str = "BRCA",
    n_genes: int = 500,
    group_sizes: Optional[Dict[str, int]] = None,
    seed: int = 42
) -> Path:
    """
    Write a synthetic TCGA cache (counts + clinical) for trying out the pipeline.

    The first 25 genes are higher and the next 25 lower in the first group
    relative to the second.
    """
    rng = np.random.default_rng(seed)
    group_sizes = group_sizes or {
        "white": 30,
        "black or african american": 20,
        "asian": 16,
        "american indian or alaska native": 3,
        "not reported": 5,
    }

    downloader = TCGADownloader(cache_dir=cache_dir)
    project_dir = downloader.project_dir(cancer_type)
    data_dir = downloader.data_dir(cancer_type, "RNASeq")
    data_dir.mkdir(parents=True, exist_ok=True)

    genes = [f"GENE{i}" for i in range(n_genes)]
    patients, races = [], []
    for race, size in group_sizes.items():
        for _ in range(size):
            patients.append(f"TCGA-{len(patients) // 100:02d}-{len(patients):04d}")
            races.append(race)

    # Primary tumors, plus a few normals that the data agent drops
    barcodes = [f"{p}-01A-11R-A00Z-07" for p in patients]
    barcodes += [f"{p}-11A-11R-A00Z-07" for p in patients[:5]]

    base = rng.gamma(2.0, 100.0, size=n_genes)
    counts = rng.negative_binomial(n=20, p=20 / (20 + base[:, None]), size=(n_genes, len(barcodes)))

    first_group = list(group_sizes)[0]
    in_first = np.array([races[i] == first_group for i in range(len(patients))] + [False] * 5)
    counts[:25, in_first] = counts[:25, in_first] * 3
    counts[25:50, in_first] = counts[25:50, in_first] // 3

    matrix = pd.DataFrame(counts, index=genes, columns=barcodes)
    matrix.index.name = "gene_id"
    matrix.to_csv(data_dir / "expression_matrix.csv")

    pd.DataFrame({
        "barcode": barcodes,
        "patient_barcode": [TCGADownloader.patient_barcode(b) for b in barcodes],
        "sample_type_code": [TCGADownloader.get_sample_type(b) for b in barcodes],
    }).to_csv(data_dir / "metadata.csv", index=False)

    clinical = pd.DataFrame({
        "patient_barcode": patients,
        "race": races,
        "gender": rng.choice(["female", "male"], size=len(patients)),
        "age_at_diagnosis": rng.integers(30 * 365, 80 * 365, size=len(patients)),
    }).set_index("patient_barcode")
    clinical.to_csv(project_dir / "clinical.csv")

    return project_dir
