from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .config import settings
from .executors import TargetExecutors
from .loadgen import LoadGenerator
from .metrics import metrics
from .models import TEST_TYPES, RunRequest
from .scheduler import RunScheduler, default_targets, now_iso
from .store import ResultsStore

logger = logging.getLogger("loadtester")
app = FastAPI(title="Bun vs Node.js Benchmark Dashboard", version="1.0")

# The dashboard front-end may be served from another origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

targets = default_targets(settings)
store = ResultsStore(
    settings.results_dir,
    settings.fallback_results_dir,
    history_limit=settings.history_limit,
    target_keys=[t.key for t in targets],
)
executors = TargetExecutors(
    LoadGenerator(settings.hey_bin),
    timeout_s=settings.request_timeout_s,
    payload_path=settings.upload_payload_path,
)
scheduler = RunScheduler(executors, store, targets)


@app.on_event("startup")
async def _startup() -> None:
    # Resolve (and probe) the results dir once, logging any fallback here.
    await asyncio.to_thread(lambda: store.results_dir)
    metrics.set_gauge("service_up", 1.0)


@app.on_event("shutdown")
async def _shutdown() -> None:
    metrics.set_gauge("service_up", 0.0)


@app.get("/metrics", response_class=PlainTextResponse)
def get_metrics() -> str:
    return metrics.snapshot()


@app.get("/api/tests")
def list_tests() -> dict:
    return {
        "tests": [
            {
                "id": test_id,
                "name": kind.name,
                "endpoint": kind.endpoint,
                "type": kind.type,
                "description": kind.description,
            }
            for test_id, kind in TEST_TYPES.items()
        ]
    }


@app.get("/api/health")
async def health() -> dict:
    services = await scheduler.check_health()
    return {"dashboard": "ok", "services": services, "timestamp": now_iso()}


@app.get("/api/services")
async def services() -> Dict[str, Any]:
    return await scheduler.check_health()


@app.post("/api/run")
async def start_run(req: RunRequest) -> dict:
    if not req.test_type or req.test_type not in TEST_TYPES:
        raise HTTPException(status_code=400, detail="Invalid test type")

    run_id = scheduler.start(req.test_type, req.resolve(settings))
    return {"runId": run_id, "status": "started"}


@app.get("/api/status/{run_id}")
async def run_status(run_id: str) -> Dict[str, Any]:
    status = await scheduler.status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return status


@app.get("/api/reports")
async def list_reports() -> dict:
    runs = await asyncio.to_thread(store.list_runs)
    return {"reports": runs}


@app.get("/api/reports/{run_id}")
async def get_report(run_id: str) -> Dict[str, Any]:
    details = await asyncio.to_thread(store.get_run, run_id)
    if details is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return details


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Targets: %s", ", ".join(f"{t.label}={t.base_url}" for t in targets))
    uvicorn.run(app, host=settings.host, port=settings.port)
