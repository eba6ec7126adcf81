"""
Storage of run configuration, batch results and run summaries.
"""

import json
import re
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Any, Union

import pandas as pd

from .config import BenchmarkConfig
from .models import BatchResult, RunSummary, RESULT_COLUMNS


def make_path_safe(name: str, max_length: int = 30) -> str:
    """Convert name to filesystem-safe string."""
    if not name:
        return "unnamed"

    safe_name = re.sub(r'[^\w\s-]', '', name.lower())
    safe_name = re.sub(r'[\s_]+', '-', safe_name)
    safe_name = safe_name.strip('-')

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('-')

    return safe_name or "unnamed"


def generate_timestamp() -> str:
    """Generate compact timestamp: YYYYMMDD-HHMMSS."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def generate_short_uuid(length: int = 4) -> str:
    """Generate short UUID suffix."""
    return uuid.uuid4().hex[:length]


def create_folder_name(human_name: str) -> str:
    """Create folder name: name_timestamp_uuid."""
    return f"{make_path_safe(human_name)}_{generate_timestamp()}_{generate_short_uuid()}"


class ResultStore:
    """
    One run directory holding config.json, results.csv, summary.json and
    benchmark.log.

    results.csv is append-only: the header is written when the run is
    created and each completed batch adds one row. Appends are serialized
    with a lock.
    """

    RESULTS_FILE = "results.csv"
    CONFIG_FILE = "config.json"
    SUMMARY_FILE = "summary.json"
    LOG_FILE = "benchmark.log"

    def __init__(self, run_path: Union[str, Path]):
        self.run_path = Path(run_path)
        self._lock = threading.Lock()

    @classmethod
    def create_run(cls, output_dir: Union[str, Path], config: BenchmarkConfig, run_name: str = "benchmark") -> "ResultStore":
        """Create a fresh run directory and its empty result log."""
        run_path = Path(output_dir) / create_folder_name(run_name)
        run_path.mkdir(parents=True, exist_ok=False)
        store = cls(run_path)

        with open(store.config_path, 'w') as f:
            json.dump({
                **config.model_dump(),
                'created_at': datetime.now().isoformat()
            }, f, indent=2)

        pd.DataFrame(columns=RESULT_COLUMNS).to_csv(store.results_path, index=False)
        return store

    @classmethod
    def open(cls, run_path: Union[str, Path]) -> "ResultStore":
        """Open an existing run directory."""
        store = cls(run_path)
        if not store.results_path.exists():
            raise ValueError(f"No results found in {run_path}")
        return store

    @staticmethod
    def latest_run(output_dir: Union[str, Path]) -> Optional[Path]:
        """Most recently modified run directory under output_dir."""
        output_dir = Path(output_dir)
        if not output_dir.exists():
            return None
        runs = [p for p in output_dir.iterdir() if p.is_dir() and (p / ResultStore.RESULTS_FILE).exists()]
        if not runs:
            return None
        return max(runs, key=lambda p: p.stat().st_mtime)

    @property
    def results_path(self) -> Path:
        return self.run_path / self.RESULTS_FILE

    @property
    def config_path(self) -> Path:
        return self.run_path / self.CONFIG_FILE

    @property
    def summary_path(self) -> Path:
        return self.run_path / self.SUMMARY_FILE

    @property
    def log_path(self) -> Path:
        return self.run_path / self.LOG_FILE

    def append_result(self, result: BatchResult) -> None:
        """Append one batch result to the result log."""
        row = pd.DataFrame([result.to_record()], columns=RESULT_COLUMNS)
        with self._lock:
            row.to_csv(self.results_path, mode='a', header=False, index=False)

    def save_summary(self, summary: RunSummary) -> None:
        with open(self.summary_path, 'w') as f:
            json.dump(summary.to_dict(), f, indent=2)

    def load_summary(self) -> Optional[Dict[str, Any]]:
        if not self.summary_path.exists():
            return None
        with open(self.summary_path, 'r') as f:
            return json.load(f)

    def load_config(self) -> Dict[str, Any]:
        with open(self.config_path, 'r') as f:
            return json.load(f)

    def load_results(self) -> pd.DataFrame:
        """Load the result log; missing statistics come back as NaN."""
        return pd.read_csv(self.results_path)

    def export_results(self, output: Union[str, Path], format: str = "csv") -> int:
        """
        Export the result log to another file.

        Returns:
            Number of exported rows
        """
        df = self.load_results()
        if format == 'csv':
            df.to_csv(output, index=False)
        elif format == 'json':
            df.to_json(output, orient='records', indent=2)
        else:
            raise ValueError(f"Unsupported format: {format}")
        return len(df)


def compare_engines(df: pd.DataFrame) -> pd.DataFrame:
    """
    Side-by-side view of engines for each prompt type and token count.

    Returns:
        DataFrame indexed by (prompt_type, max_tokens) with one column per
        (metric, engine)
    """
    if df.empty:
        return df
    return df.pivot_table(
        index=['prompt_type', 'max_tokens'],
        columns='engine',
        values=['avg_response_time', 'avg_tokens_per_second'],
        aggfunc='mean',
        sort=False
    ).round(3)
