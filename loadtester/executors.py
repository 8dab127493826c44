from __future__ import annotations

import asyncio
import logging
import math
import os
import tempfile
from typing import Any, Dict, List, Optional

import httpx

from .loadgen import LoadGenerator, LoadGeneratorError
from .metrics import metrics
from .models import (
    ConcurrencyLevelResult,
    ConcurrentSessionsResult,
    CpuResult,
    FibonacciResult,
    JsonResult,
    NetworkEgressResult,
    NetworkInboundResult,
    ThroughputResult,
)
from .parser import parse_duration_secs, parse_hey_output

logger = logging.getLogger("loadtester.executors")

PAYLOAD_SIZE_KB = 1024
SUCCESS_THRESHOLD = 95.0
SESSION_HOLD_MS = 1000


def generate_concurrency_levels(max_concurrency: int) -> List[int]:
    levels: List[int] = []

    if max_concurrency <= 500:
        # 50, 100, 200, 300, 400, 500
        for i in range(50, max_concurrency + 1, 50):
            if i <= 100 or i % 100 == 0:
                levels.append(i)
    elif max_concurrency <= 2000:
        # 100, 250, 500, 750, ..., 2000
        levels.extend([100, 250, 500])
        levels.extend(range(750, max_concurrency + 1, 250))
    else:
        # 100, 500, 1000, 1500, ..., max
        levels.extend([100, 500, 1000])
        levels.extend(range(1500, max_concurrency + 1, 500))

    if not levels or levels[-1] != max_concurrency:
        levels.append(max_concurrency)

    return [lvl for lvl in levels if lvl <= max_concurrency]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mbps(total_bytes: float, seconds: float) -> float:
    if seconds <= 0:
        return 0.0
    return round(total_bytes / seconds * 8 / 1_000_000, 2)


def recommendation_for(max_sustained: int, target: int) -> str:
    if max_sustained >= target:
        return f"Server handles {target}+ concurrent connections well"
    if max_sustained >= 1000:
        return f"Server sustains {max_sustained} concurrent connections (target: {target})"
    return f"Server may struggle above {max_sustained} concurrent connections"


class TargetExecutors:
    """One coroutine per benchmark kind, each driving a single target.

    Network calls go through a fresh ``httpx.AsyncClient`` per executor call;
    ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        load_generator: LoadGenerator,
        timeout_s: float = 30.0,
        payload_path: str = "/tmp/upload-payload.bin",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.load_generator = load_generator
        self.timeout = httpx.Timeout(timeout_s)
        self.payload_path = payload_path
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.inc("iteration_failures_total", 1)
            logger.debug("GET %s failed: %s", url, exc)
            return None
        return body if isinstance(body, dict) else None

    # -- health -------------------------------------------------------------

    async def check_health(self, base_url: str) -> Dict[str, Any]:
        url = f"{base_url}/api/health"
        try:
            async with self._client() as client:
                resp = await client.get(url)
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            return {"error": str(exc) or exc.__class__.__name__}

        if not isinstance(body, dict):
            return {"error": "unexpected health payload"}
        if not body.get("runtime"):
            return {**body, "error": "health payload has no runtime field"}
        return body

    # -- load-generator backed kinds ----------------------------------------

    async def throughput(
        self, name: str, base_url: str, endpoint: str, duration: str, concurrency: int
    ) -> ThroughputResult:
        try:
            output = await self.load_generator.run(f"{base_url}{endpoint}", duration, concurrency)
        except LoadGeneratorError as exc:
            metrics.inc("loadgen_failures_total", 1)
            logger.warning("%s throughput %s failed: %s", name, endpoint, exc)
            return ThroughputResult(test=name, endpoint=endpoint, error=str(exc))

        report = parse_hey_output(output)
        return ThroughputResult(
            test=name,
            endpoint=endpoint,
            duration=duration,
            concurrency=concurrency,
            requests_per_second=report.rps,
            avg_latency_secs=report.avg_latency,
            p99_latency_secs=report.p99_latency,
            total_requests=report.total_requests,
            raw_output=output,
        )

    async def network_egress(
        self, name: str, base_url: str, duration: str, concurrency: int
    ) -> NetworkEgressResult:
        endpoint = f"/api/network/download/{PAYLOAD_SIZE_KB}"
        try:
            output = await self.load_generator.run(f"{base_url}{endpoint}", duration, concurrency)
        except LoadGeneratorError as exc:
            metrics.inc("loadgen_failures_total", 1)
            logger.warning("%s egress failed: %s", name, exc)
            return NetworkEgressResult(test=name, endpoint=endpoint, error=str(exc))

        report = parse_hey_output(output)
        return NetworkEgressResult(
            test=name,
            endpoint=endpoint,
            duration=duration,
            concurrency=concurrency,
            payload_size_kb=PAYLOAD_SIZE_KB,
            total_requests=report.total_requests,
            total_bytes=report.total_bytes,
            total_mb=round(report.total_bytes / (1024 * 1024), 2),
            requests_per_second=report.rps,
            throughput_mbps=_mbps(report.total_bytes, parse_duration_secs(duration)),
            avg_latency_secs=report.avg_latency,
            p99_latency_secs=report.p99_latency,
            raw_output=output,
        )

    def _write_payload(self) -> None:
        size = PAYLOAD_SIZE_KB * 1024
        try:
            if os.path.getsize(self.payload_path) == size:
                return
        except OSError:
            pass

        # Other runs may be uploading this file; swap it in whole.
        directory = os.path.dirname(self.payload_path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".payload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(b"\0" * size)
            os.replace(tmp, self.payload_path)
        except OSError:
            os.unlink(tmp)
            raise

    async def network_inbound(
        self, name: str, base_url: str, duration: str, concurrency: int
    ) -> NetworkInboundResult:
        endpoint = "/api/network/upload"
        try:
            await asyncio.to_thread(self._write_payload)
            output = await self.load_generator.run(
                f"{base_url}{endpoint}",
                duration,
                concurrency,
                method="POST",
                body_file=self.payload_path,
                content_type="application/octet-stream",
            )
        except (OSError, LoadGeneratorError) as exc:
            metrics.inc("loadgen_failures_total", 1)
            logger.warning("%s inbound failed: %s", name, exc)
            return NetworkInboundResult(test=name, endpoint=endpoint, error=str(exc))

        report = parse_hey_output(output)
        # Upload bytes are not visible in hey's report, so count them from successes.
        successful = report.successful_requests if report.status_codes else int(report.total_requests)
        uploaded = successful * PAYLOAD_SIZE_KB * 1024
        return NetworkInboundResult(
            test=name,
            endpoint=endpoint,
            duration=duration,
            concurrency=concurrency,
            payload_size_kb=PAYLOAD_SIZE_KB,
            total_requests=report.total_requests,
            successful_requests=successful,
            total_uploaded_bytes=uploaded,
            total_uploaded_mb=round(uploaded / (1024 * 1024), 2),
            requests_per_second=report.rps,
            throughput_mbps=_mbps(uploaded, parse_duration_secs(duration)),
            avg_latency_secs=report.avg_latency,
            p99_latency_secs=report.p99_latency,
            raw_output=output,
        )

    async def concurrent_sessions(
        self, name: str, base_url: str, max_concurrency: int, level_duration: str = "10s"
    ) -> ConcurrentSessionsResult:
        endpoint = f"/api/network/hold/{SESSION_HOLD_MS}"
        levels = generate_concurrency_levels(max_concurrency)
        logger.info("%s concurrent sessions: levels %s (max %d)", name, levels, max_concurrency)

        tested: List[ConcurrencyLevelResult] = []
        for concurrency in levels:
            try:
                output = await self.load_generator.run(f"{base_url}{endpoint}", level_duration, concurrency)
            except LoadGeneratorError as exc:
                metrics.inc("loadgen_failures_total", 1)
                tested.append(ConcurrencyLevelResult(concurrency=concurrency, error=str(exc)))
                break

            report = parse_hey_output(output)
            total = report.total_requests
            # Non-2xx responses count as failures, like transport errors.
            if report.status_codes:
                ok = report.successful_requests
            else:
                ok = total - report.error_count
            success_rate = round(ok / total * 100, 1) if total > 0 else 0.0
            tested.append(
                ConcurrencyLevelResult(
                    concurrency=concurrency,
                    total_requests=total,
                    requests_per_second=report.rps,
                    avg_latency_secs=report.avg_latency,
                    success_rate=success_rate,
                    errors=report.error_count,
                )
            )
            if success_rate < SUCCESS_THRESHOLD:
                break

        sustained = [
            lvl.concurrency for lvl in tested if lvl.error is None and lvl.success_rate >= SUCCESS_THRESHOLD
        ]
        max_sustained = max(sustained) if sustained else 0
        return ConcurrentSessionsResult(
            test=name,
            endpoint=endpoint,
            duration=f"{level_duration} per level",
            tested_levels=tested,
            max_sustained_concurrency=max_sustained,
            target_concurrency=max_concurrency,
            recommendation=recommendation_for(max_sustained, max_concurrency),
        )

    # -- request/response kinds ---------------------------------------------

    async def _collect_durations(self, url: str, iterations: int) -> List[Dict[str, Any]]:
        samples: List[Dict[str, Any]] = []
        async with self._client() as client:
            for _ in range(iterations):
                body = await self._get_json(client, url)
                samples.append(body or {})
        return samples

    @staticmethod
    def _duration_of(sample: Dict[str, Any]) -> float:
        try:
            return float(sample.get("duration_ms") or 0)
        except (TypeError, ValueError):
            return 0.0

    async def cpu(self, name: str, base_url: str, iterations: int = 10) -> CpuResult:
        samples = await self._collect_durations(f"{base_url}/api/cpu-heavy", iterations)
        times = [self._duration_of(s) for s in samples]
        valid = [t for t in times if t > 0]
        return CpuResult(
            test=name,
            iterations=iterations,
            avg_duration_ms=_round_half_up(sum(valid) / len(valid)) if valid else 0,
            min_duration_ms=min(valid) if valid else 0,
            max_duration_ms=max(valid) if valid else 0,
            all_durations_ms=times,
        )

    async def fibonacci(self, name: str, base_url: str, n: int = 40, iterations: int = 5) -> FibonacciResult:
        samples = await self._collect_durations(f"{base_url}/api/fibonacci/{n}", iterations)
        times = [self._duration_of(s) for s in samples]
        valid = [t for t in times if t > 0]
        result = 0
        for s in samples:
            if isinstance(s.get("result"), int):
                result = s["result"]
        return FibonacciResult(
            test=name,
            n=n,
            result=result,
            iterations=iterations,
            avg_duration_ms=_round_half_up(sum(valid) / len(valid)) if valid else 0,
            all_durations_ms=times,
        )

    async def json_processing(
        self, name: str, base_url: str, iterations: int = 100, size: str = "medium"
    ) -> JsonResult:
        endpoint = f"/api/json-benchmark/{size}"
        successful: List[Dict[str, float]] = []
        async with self._client() as client:
            for _ in range(iterations):
                body = await self._get_json(client, f"{base_url}{endpoint}")
                if body is None:
                    continue
                try:
                    timings = body["timings_ms"]
                    successful.append(
                        {
                            "json_kb": float(body.get("json_kb") or 0),
                            "stringify_ms": float(timings["stringify"]),
                            "parse_ms": float(timings["parse"]),
                            "total_ms": float(timings["total"]),
                        }
                    )
                except (KeyError, TypeError, ValueError):
                    metrics.inc("iteration_failures_total", 1)

        def avg(key: str) -> float:
            if not successful:
                return 0.0
            return round(sum(s[key] for s in successful) / len(successful), 3)

        return JsonResult(
            test=name,
            endpoint=endpoint,
            iterations=iterations,
            successful_iterations=len(successful),
            avg_stringify_ms=avg("stringify_ms"),
            avg_parse_ms=avg("parse_ms"),
            avg_total_ms=avg("total_ms"),
            json_size_kb=successful[0]["json_kb"] if successful else 0,
        )
