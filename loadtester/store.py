from __future__ import annotations

import json
import logging
import os
import re
import threading
from typing import Any, Dict, List, Optional, Sequence

from .metrics import metrics
from .models import TEST_TYPES, IndexEntry, Run
from .summary import extract_run_details

logger = logging.getLogger("loadtester.store")

INDEX_FILE = "runs.json"
CONFIG_FILE = "config.json"
SUMMARY_FILE = "summary.json"

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# Index updates are read-modify-write; concurrent run completions go through this.
_index_lock = threading.Lock()


def _probe_writable(path: str) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
        probe = os.path.join(path, ".write-test")
        with open(probe, "w") as f:
            f.write("test")
        os.remove(probe)
        return True
    except OSError:
        return False


def resolve_results_dir(primary: str, fallback: str) -> str:
    if _probe_writable(primary):
        return primary
    logger.warning("Primary results dir %s not writable, using %s", primary, fallback)
    try:
        os.makedirs(fallback, exist_ok=True)
    except OSError:
        logger.exception("Failed to create fallback results dir %s", fallback)
    return fallback


def results_file(target_key: str) -> str:
    return f"{target_key}-results.json"


def _write_json(path: str, payload: Any) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp, path)


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class ResultsStore:
    def __init__(
        self,
        primary_dir: str,
        fallback_dir: str,
        history_limit: int = 50,
        target_keys: Sequence[str] = ("bun", "nodejs"),
    ) -> None:
        self.primary_dir = primary_dir
        self.fallback_dir = fallback_dir
        self.history_limit = history_limit
        self.target_keys = tuple(target_keys)
        self._results_dir: Optional[str] = None

    @property
    def results_dir(self) -> str:
        if self._results_dir is None:
            self._results_dir = resolve_results_dir(self.primary_dir, self.fallback_dir)
            logger.info("Using results directory: %s", self._results_dir)
        return self._results_dir

    @property
    def index_path(self) -> str:
        return os.path.join(self.results_dir, INDEX_FILE)

    def _run_dir(self, run_id: str) -> Optional[str]:
        if not _RUN_ID_RE.match(run_id or ""):
            return None
        return os.path.join(self.results_dir, run_id)

    # -- writes -------------------------------------------------------------

    def save(self, run: Run) -> bool:
        """Persist a finished run. Failures are logged, never raised."""
        run_dir = self._run_dir(run.id)
        if run_dir is None:
            logger.error("Refusing to persist run with unsafe id %r", run.id)
            return False

        try:
            os.makedirs(run_dir, exist_ok=True)
            _write_json(os.path.join(run_dir, CONFIG_FILE), run.config.model_dump(mode="json", by_alias=True))
            for key in self.target_keys:
                record = run.results.get(key)
                payload = record.model_dump(mode="json") if record is not None else None
                _write_json(os.path.join(run_dir, results_file(key)), payload)
            _write_json(
                os.path.join(run_dir, SUMMARY_FILE),
                {
                    "id": run.id,
                    "testType": run.test_type,
                    "startTime": run.start_time,
                    "endTime": run.end_time,
                    "summary": run.summary.model_dump(mode="json", by_alias=True) if run.summary else None,
                },
            )
            self._update_index(run)
        except (OSError, TypeError, ValueError):
            metrics.inc("results_persist_failures_total", 1)
            logger.exception("Failed to save results for %s", run.id)
            return False
        return True

    def _update_index(self, run: Run) -> None:
        kind = TEST_TYPES.get(run.test_type)
        entry = IndexEntry(
            id=run.id,
            test_type=run.test_type,
            test_name=kind.name if kind else run.test_type,
            start_time=run.start_time,
            end_time=run.end_time,
            config=run.config,
            summary=run.summary,
            details=extract_run_details(run.results, run.test_type, self.target_keys),
        )
        with _index_lock:
            runs = self.list_runs()
            runs.insert(0, entry.model_dump(mode="json", by_alias=True))
            _write_json(self.index_path, runs[: self.history_limit])

    # -- reads --------------------------------------------------------------

    def list_runs(self) -> List[Dict[str, Any]]:
        try:
            runs = _read_json(self.index_path)
        except FileNotFoundError:
            return []
        except (OSError, ValueError):
            logger.warning("Run index %s unreadable, starting from empty", self.index_path)
            return []
        return runs if isinstance(runs, list) else []

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        run_dir = self._run_dir(run_id)
        if run_dir is None:
            return None
        try:
            config = _read_json(os.path.join(run_dir, CONFIG_FILE))
            results = {key: _read_json(os.path.join(run_dir, results_file(key))) for key in self.target_keys}
            summary = _read_json(os.path.join(run_dir, SUMMARY_FILE))
        except (OSError, ValueError):
            return None
        return {"config": config, "results": results, "summary": summary}
