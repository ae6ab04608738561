"""
Pipeline agent base class.

An agent reads files from ``input_dir``, writes files to ``output_dir`` and
leaves two records behind:
- log_<agent>.txt: DEBUG-level log of the run
- meta_<agent>.json: timing, status, config and the files it read and wrote
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..config import LOG_FORMAT


class BaseAgent(ABC):
    """Base class for all pipeline agents."""

    # Files that must exist in input_dir before the agent can start
    REQUIRED_INPUTS: List[str] = []

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.agent_name = agent_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.config = dict(config or {})

        self.logger = self._setup_logging()

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success = False
        self.errors: List[str] = []
        self.files_read: List[str] = []
        self.files_written: List[str] = []

    def _setup_logging(self) -> logging.Logger:
        """Per-agent logger: DEBUG to log_<agent>.txt, INFO to the console."""
        logger = logging.getLogger(f"tcga_cohort_deg.{self.agent_name}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        # Re-running an agent must not stack handlers
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        formatter = logging.Formatter(LOG_FORMAT)
        handlers = [
            (logging.FileHandler(self.output_dir / f"log_{self.agent_name}.txt",
                                 mode='w', encoding='utf-8'), logging.DEBUG),
            (logging.StreamHandler(), logging.INFO),
        ]
        for handler, level in handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def missing_inputs(self) -> List[str]:
        """REQUIRED_INPUTS not present in input_dir."""
        return [name for name in self.REQUIRED_INPUTS
                if not (self.input_dir / name).exists()]

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _input_path(self, filename: str, required: bool) -> Optional[Path]:
        filepath = self.input_dir / filename
        if filepath.exists():
            self.files_read.append(filename)
            return filepath
        if required:
            raise FileNotFoundError(f"Required input file not found: {filepath}")
        self.logger.warning(f"Optional file not found: {filepath}")
        return None

    def load_csv(
        self,
        filename: str,
        required: bool = True,
        index_col: Optional[int] = None
    ) -> Optional[pd.DataFrame]:
        """Read a CSV from input_dir; None if optional and absent."""
        filepath = self._input_path(filename, required)
        if filepath is None:
            return None

        df = pd.read_csv(filepath, index_col=index_col)
        self.logger.info(f"Loaded {filename}: {df.shape[0]} rows x {df.shape[1]} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str, index: bool = False) -> Path:
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=index)
        self.files_written.append(filename)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def load_json(self, filename: str, required: bool = True) -> Optional[Any]:
        filepath = self._input_path(filename, required)
        if filepath is None:
            return None

        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)

    def save_json(self, data: Any, filename: str) -> Path:
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        if not filename.startswith("meta_"):
            self.files_written.append(filename)
        self.logger.info(f"Saved {filename}")
        return filepath

    def generate_metadata(self, results: Dict[str, Any]) -> Dict[str, Any]:
        """Execution record written to meta_<agent>.json."""
        elapsed = None
        if self.start_time and self.end_time:
            elapsed = round((self.end_time - self.start_time).total_seconds(), 3)

        return {
            "agent_name": self.agent_name,
            "started": self.start_time.isoformat() if self.start_time else None,
            "finished": self.end_time.isoformat() if self.end_time else None,
            "execution_time_seconds": elapsed,
            "success": self.success,
            "errors": self.errors,
            "config_used": self.config,
            "files_read": sorted(set(self.files_read)),
            "files_written": self.files_written,
            "results": results,
        }

    # ------------------------------------------------------------------
    # Agent contract
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Load and check inputs; False stops the agent before run()."""

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Do the work and return a JSON-serializable summary."""

    @abstractmethod
    def validate_outputs(self) -> bool:
        """Check what run() wrote; False marks the agent as failed."""

    def execute(self) -> Dict[str, Any]:
        """validate_inputs -> run -> validate_outputs, always leaving a metadata record."""
        self.start_time = datetime.now()
        results: Dict[str, Any] = {}
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        try:
            missing = self.missing_inputs()
            if missing:
                raise FileNotFoundError(f"{self.agent_name} is missing inputs: {missing}")

            if not self.validate_inputs():
                raise ValueError("Input validation failed")

            results = self.run()

            if not self.validate_outputs():
                raise ValueError("Output validation failed")

            self.success = True
            self.logger.info(f"{self.agent_name} completed successfully")

        except Exception as e:
            self.success = False
            self.errors.append(f"{type(e).__name__}: {e}")
            self.logger.error(f"Error in {self.agent_name}: {e}")
            raise

        finally:
            self.end_time = datetime.now()
            self.save_json(self.generate_metadata(results), f"meta_{self.agent_name}.json")

        return results


class AgentResult:
    """Outcome of one agent run, as kept by the orchestrator."""

    def __init__(
        self,
        agent_name: str,
        success: bool,
        output_dir: Path,
        metadata: Dict[str, Any],
        errors: Optional[List[str]] = None
    ):
        self.agent_name = agent_name
        self.success = success
        self.output_dir = output_dir
        self.metadata = metadata
        self.errors = errors or []

    def __repr__(self):
        status = "SUCCESS" if self.success else "FAILED"
        return f"AgentResult({self.agent_name}: {status})"
