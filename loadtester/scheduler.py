from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .executors import TargetExecutors
from .metrics import metrics
from .models import TEST_TYPES, ResultBase, Run, RunConfig, SuiteResult, Target
from .store import ResultsStore
from .summary import calculate_summary

logger = logging.getLogger("loadtester.scheduler")

HEALTH_CHECK_PROGRESS = 2
SUMMARY_PROGRESS = 95
SINGLE_MILESTONES = (20, 60)

# Suite time budget (seconds)
QUICK_TESTS_SECS = 30
CONCURRENT_SESSIONS_SECS = 120
DURATION_BASED_RUNS = 8  # todos, health, egress, inbound on both targets
MIN_PHASE_SECS = 30
SUITE_FIBONACCI_ITERATIONS = 5
SUITE_JSON_ITERATIONS = 50


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def default_targets(settings: Any) -> List[Target]:
    return [
        Target("bun", "Bun", settings.bun_url),
        Target("nodejs", "Node.js", settings.nodejs_url),
    ]


@dataclass(frozen=True)
class Phase:
    description: str  # formatted with the target label
    milestones: Tuple[int, int]  # progress when target A / target B starts
    execute: Callable[[Target], Awaitable[ResultBase]]
    slot: Optional[Tuple[str, ...]] = None  # where a suite sub-result lands
    kind: str = ""  # test type the phase measures; defaults to the run's


@dataclass(frozen=True)
class SuiteBudget:
    per_test_secs: int
    concurrent_target: int

    @property
    def duration(self) -> str:
        return f"{self.per_test_secs}s"

    @classmethod
    def from_config(cls, config: RunConfig) -> "SuiteBudget":
        minutes = config.suite_duration_minutes
        remaining = minutes * 60 - QUICK_TESTS_SECS - CONCURRENT_SESSIONS_SECS
        per_test = max(MIN_PHASE_SECS, remaining // DURATION_BASED_RUNS)
        if minutes >= 20:
            ceiling = 2000
        elif minutes >= 10:
            ceiling = 1000
        else:
            ceiling = 500
        return cls(per_test_secs=per_test, concurrent_target=min(config.max_concurrency, ceiling))


class RunScheduler:
    """Owns every run started in this process.

    Runs execute as background asyncio tasks. Callers only ever see copies
    or serialized snapshots; mutation happens inside this class.
    """

    def __init__(self, executors: TargetExecutors, store: ResultsStore, targets: Sequence[Target]) -> None:
        if len(targets) != 2:
            raise ValueError("exactly two targets are compared")
        self.executors = executors
        self.store = store
        self.targets = list(targets)
        self._runs: Dict[str, Run] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def target_keys(self) -> Tuple[str, str]:
        return self.targets[0].key, self.targets[1].key

    # -- public operations --------------------------------------------------

    def start(self, test_type: str, config: RunConfig) -> str:
        run = Run(
            id=self._new_run_id(),
            test_type=test_type,
            config=config,
            start_time=now_iso(),
            results={t.key: None for t in self.targets},
        )
        self._runs[run.id] = run
        metrics.inc("runs_started_total", 1)
        logger.info("Run %s started: %s", run.id, test_type)

        if test_type not in TEST_TYPES:
            self._fail(run, "Unknown test type")
            return run.id

        task = asyncio.create_task(self._execute(run))
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        return run.id

    def get(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def wait(self, run_id: str) -> Optional[Run]:
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return self.get(run_id)

    async def status(self, run_id: str) -> Optional[Dict[str, Any]]:
        run = self._runs.get(run_id)
        if run is not None:
            return run.model_dump(mode="json", by_alias=True, exclude_none=True)

        details = await asyncio.to_thread(self.store.get_run, run_id)
        if details is None:
            return None
        meta = details["summary"] if isinstance(details["summary"], dict) else {}
        return {
            "id": run_id,
            "testType": meta.get("testType"),
            "config": details["config"],
            "status": "complete",
            "progress": 100,
            "progressText": "Complete!",
            "startTime": meta.get("startTime"),
            "endTime": meta.get("endTime"),
            "results": details["results"],
            "summary": meta.get("summary"),
        }

    async def check_health(self) -> Dict[str, Dict[str, Any]]:
        health: Dict[str, Dict[str, Any]] = {}
        for target in self.targets:
            health[target.key] = await self.executors.check_health(target.base_url)
        return health

    # -- execution ----------------------------------------------------------

    def _new_run_id(self) -> str:
        now = datetime.now(timezone.utc)
        base = now.strftime("run-%Y-%m-%dT%H-%M-%S") + f"-{now.microsecond // 1000:03d}"
        run_id, n = base, 1
        while run_id in self._runs:
            n += 1
            run_id = f"{base}-{n}"
        return run_id

    def _fail(self, run: Run, message: str) -> None:
        run.status = "error"
        run.error = message
        run.progress_text = f"Error: {message}"
        run.end_time = now_iso()
        metrics.inc("runs_failed_total", 1)
        logger.error("Run %s failed: %s", run.id, message)

    async def _execute(self, run: Run) -> None:
        metrics.add_gauge("runs_active", 1)
        try:
            run.advance(HEALTH_CHECK_PROGRESS, "Checking service health...")
            health = await self.check_health()
            if any("error" in h for h in health.values()):
                self._fail(run, "Services not healthy")
                return

            for phase in self._phases_for(run):
                await self._run_phase(run, phase)

            run.advance(SUMMARY_PROGRESS, "Generating summary...")
            summary = calculate_summary(run.results, run.test_type, self.target_keys)
            end_time = now_iso()
            finished = run.model_copy(
                update={
                    "summary": summary,
                    "status": "complete",
                    "progress": 100,
                    "progress_text": "Complete!",
                    "end_time": end_time,
                }
            )
            await asyncio.to_thread(self.store.save, finished)

            run.summary = summary
            run.end_time = end_time
            run.status = "complete"
            run.advance(100, "Complete!")
            metrics.inc("runs_completed_total", 1)
            logger.info("Run %s complete: %s", run.id, summary.improvements)
        except Exception as exc:
            logger.exception("Run %s aborted", run.id)
            self._fail(run, str(exc) or exc.__class__.__name__)
        finally:
            metrics.add_gauge("runs_active", -1)

    async def _run_phase(self, run: Run, phase: Phase) -> None:
        for target, milestone in zip(self.targets, phase.milestones):
            run.advance(milestone, phase.description.format(label=target.label))
            logger.info("[%s] %s", run.id, run.progress_text)
            t0 = time.perf_counter()
            record = await phase.execute(target)
            metrics.observe_phase_ms(phase.kind or run.test_type, (time.perf_counter() - t0) * 1000.0)

            if phase.slot is None:
                run.results[target.key] = record
                continue
            suite = run.results[target.key]
            head = phase.slot[0]
            if head == "throughput":
                suite.throughput[phase.slot[1]] = record
            else:
                setattr(suite, head, record)

    def _phases_for(self, run: Run) -> List[Phase]:
        if run.test_type == "full-suite":
            for target in self.targets:
                run.results[target.key] = SuiteResult(test=target.label)
            return self._suite_phases(run.config)
        return [self._single_phase(run.test_type, run.config)]

    def _single_phase(self, test_type: str, cfg: RunConfig) -> Phase:
        ex = self.executors
        kind = TEST_TYPES[test_type]

        if kind.type == "throughput":
            return Phase(
                f"Testing {{label}} {kind.endpoint}...",
                SINGLE_MILESTONES,
                lambda t: ex.throughput(t.label, t.base_url, kind.endpoint, cfg.duration, cfg.concurrency),
            )
        if kind.type == "cpu":
            return Phase(
                "Testing {label} CPU performance...",
                SINGLE_MILESTONES,
                lambda t: ex.cpu(t.label, t.base_url, cfg.iterations),
            )
        if kind.type == "fibonacci":
            return Phase(
                "Testing {label} Fibonacci...",
                SINGLE_MILESTONES,
                lambda t: ex.fibonacci(t.label, t.base_url, 40, cfg.iterations),
            )
        if kind.type == "network-egress":
            return Phase(
                "Testing {label} egress throughput (download)...",
                SINGLE_MILESTONES,
                lambda t: ex.network_egress(t.label, t.base_url, cfg.duration, cfg.concurrency),
            )
        if kind.type == "network-inbound":
            return Phase(
                "Testing {label} inbound throughput (upload)...",
                SINGLE_MILESTONES,
                lambda t: ex.network_inbound(t.label, t.base_url, cfg.duration, cfg.concurrency),
            )
        if kind.type == "concurrent-sessions":
            return Phase(
                "Testing {label} max concurrent sessions...",
                SINGLE_MILESTONES,
                lambda t: ex.concurrent_sessions(t.label, t.base_url, cfg.max_concurrency),
            )
        if kind.type == "json":
            return Phase(
                "Testing {label} JSON processing...",
                SINGLE_MILESTONES,
                lambda t: ex.json_processing(t.label, t.base_url, cfg.iterations),
            )
        raise ValueError(f"no executor for test type {test_type}")

    def _suite_phases(self, cfg: RunConfig) -> List[Phase]:
        ex = self.executors
        budget = SuiteBudget.from_config(cfg)
        logger.info(
            "Full suite: %d min total, %ss per duration-based test, concurrency target %d",
            cfg.suite_duration_minutes, budget.per_test_secs, budget.concurrent_target,
        )
        return [
            Phase(
                "Testing {label} /api/todos throughput...", (5, 10),
                lambda t: ex.throughput(t.label, t.base_url, "/api/todos", budget.duration, cfg.concurrency),
                ("throughput", "todos"), "throughput-todos",
            ),
            Phase(
                "Testing {label} /api/health throughput...", (15, 20),
                lambda t: ex.throughput(t.label, t.base_url, "/api/health", budget.duration, cfg.concurrency),
                ("throughput", "health"), "throughput-health",
            ),
            Phase(
                "Testing {label} network egress (download)...", (25, 35),
                lambda t: ex.network_egress(t.label, t.base_url, budget.duration, cfg.concurrency),
                ("network_egress",), "network-egress",
            ),
            Phase(
                "Testing {label} network inbound (upload)...", (42, 50),
                lambda t: ex.network_inbound(t.label, t.base_url, budget.duration, cfg.concurrency),
                ("network_inbound",), "network-inbound",
            ),
            Phase(
                "Testing {label} CPU performance...", (55, 60),
                lambda t: ex.cpu(t.label, t.base_url, cfg.iterations),
                ("cpu",), "cpu-heavy",
            ),
            Phase(
                "Testing {label} Fibonacci...", (65, 70),
                lambda t: ex.fibonacci(t.label, t.base_url, 40, SUITE_FIBONACCI_ITERATIONS),
                ("fibonacci",), "fibonacci",
            ),
            Phase(
                "Testing {label} concurrent sessions...", (72, 80),
                lambda t: ex.concurrent_sessions(t.label, t.base_url, budget.concurrent_target),
                ("concurrent",), "concurrent-sessions",
            ),
            Phase(
                "Testing {label} JSON processing...", (88, 92),
                lambda t: ex.json_processing(t.label, t.base_url, SUITE_JSON_ITERATIONS),
                ("json_processing",), "json-processing",
            ),
        ]
