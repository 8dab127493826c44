import httpx
import pytest

from fakes import BUN, FakeLoadGenerator, MockTargets, hey_output
from loadtester.executors import TargetExecutors, generate_concurrency_levels, recommendation_for
from loadtester.loadgen import LoadGenerator, LoadGeneratorError


def make_executors(loadgen=None, targets=None, tmp_path=None):
    targets = targets or MockTargets()
    payload = str(tmp_path / "payload.bin") if tmp_path else "/tmp/upload-payload-test.bin"
    return TargetExecutors(loadgen or FakeLoadGenerator(), timeout_s=5.0, payload_path=payload, transport=targets.transport)


# -- concurrency levels -----------------------------------------------------

def test_levels_medium_range():
    levels = generate_concurrency_levels(2000)
    assert levels == [100, 250, 500, 750, 1000, 1250, 1500, 1750, 2000]
    assert max(levels) == 2000


def test_levels_small_ceiling_is_step_and_final():
    assert generate_concurrency_levels(100) == [50, 100]


def test_levels_low_range():
    assert generate_concurrency_levels(500) == [50, 100, 200, 300, 400, 500]


def test_levels_off_step_ceiling_appended():
    assert generate_concurrency_levels(1200) == [100, 250, 500, 750, 1000, 1200]
    assert generate_concurrency_levels(150) == [50, 100, 150]
    assert generate_concurrency_levels(20) == [20]


def test_levels_high_range():
    levels = generate_concurrency_levels(5000)
    assert levels[:4] == [100, 500, 1000, 1500]
    assert levels[-1] == 5000
    assert all(lvl <= 5000 for lvl in levels)
    assert levels == sorted(levels)


def test_recommendation_bands():
    assert recommendation_for(2000, 2000) == "Server handles 2000+ concurrent connections well"
    assert recommendation_for(1500, 2000) == "Server sustains 1500 concurrent connections (target: 2000)"
    assert recommendation_for(250, 2000) == "Server may struggle above 250 concurrent connections"


# -- load generator command -------------------------------------------------

def test_load_generator_upload_command():
    cmd = LoadGenerator("hey").build_command(
        "http://bun.test/api/network/upload", "30s", 50,
        method="POST", body_file="/tmp/p.bin", content_type="application/octet-stream",
    )
    assert cmd == [
        "hey", "-z", "30s", "-c", "50", "-m", "POST", "-D", "/tmp/p.bin",
        "-T", "application/octet-stream", "http://bun.test/api/network/upload",
    ]


@pytest.mark.asyncio
async def test_load_generator_missing_binary():
    with pytest.raises(LoadGeneratorError):
        await LoadGenerator("/nonexistent/hey-binary").run("http://x", "1s", 1)


# -- request/response executors ---------------------------------------------

@pytest.mark.asyncio
async def test_cpu_averages_reported_durations():
    targets = MockTargets(durations={"bun.test": [10, 20, 30]})
    result = await make_executors(targets=targets).cpu("Bun", BUN.base_url, iterations=3)
    assert result.avg_duration_ms == 20
    assert result.min_duration_ms == 10
    assert result.max_duration_ms == 30
    assert result.all_durations_ms == [10, 20, 30]


@pytest.mark.asyncio
async def test_cpu_failed_iteration_is_zero_and_excluded():
    seen = []

    def handler(request):
        seen.append(request)
        if len(seen) == 2:
            return httpx.Response(500, text="boom")
        if len(seen) == 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"duration_ms": 40})

    ex = TargetExecutors(FakeLoadGenerator(), transport=httpx.MockTransport(handler))
    result = await ex.cpu("Bun", BUN.base_url, iterations=4)
    assert result.all_durations_ms == [40, 0, 0, 40]
    assert result.avg_duration_ms == 40
    assert result.min_duration_ms == 40


@pytest.mark.asyncio
async def test_cpu_all_failures_gives_zeros():
    ex = TargetExecutors(FakeLoadGenerator(), transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    result = await ex.cpu("Bun", BUN.base_url, iterations=2)
    assert result.avg_duration_ms == 0
    assert result.max_duration_ms == 0


@pytest.mark.asyncio
async def test_fibonacci_keeps_result():
    targets = MockTargets(durations={"bun.test": [100, 200]})
    result = await make_executors(targets=targets).fibonacci("Bun", BUN.base_url, n=40, iterations=2)
    assert result.avg_duration_ms == 150
    assert result.result == 102334155
    assert result.n == 40


@pytest.mark.asyncio
async def test_json_processing_averages_timings():
    result = await make_executors().json_processing("Bun", BUN.base_url, iterations=4)
    assert result.successful_iterations == 4
    assert result.avg_stringify_ms == 1.0
    assert result.avg_parse_ms == 2.0
    assert result.avg_total_ms == 3.0
    assert result.json_size_kb == 120.5


@pytest.mark.asyncio
async def test_json_processing_skips_malformed_bodies():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(200, json={"json_kb": 1})
        return httpx.Response(200, json={"json_kb": 2, "timings_ms": {"stringify": 2, "parse": 4, "total": 6}})

    ex = TargetExecutors(FakeLoadGenerator(), transport=httpx.MockTransport(handler))
    result = await ex.json_processing("Bun", BUN.base_url, iterations=3)
    assert result.successful_iterations == 2
    assert result.avg_total_ms == 6.0
    assert result.json_size_kb == 2


# -- health ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_ok():
    body = await make_executors().check_health(BUN.base_url)
    assert body["runtime"] == "bun"
    assert "error" not in body


@pytest.mark.asyncio
async def test_health_without_runtime_is_unhealthy():
    targets = MockTargets(health={"bun.test": {"status": "starting"}})
    body = await make_executors(targets=targets).check_health(BUN.base_url)
    assert "error" in body


@pytest.mark.asyncio
async def test_health_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    ex = TargetExecutors(FakeLoadGenerator(), transport=httpx.MockTransport(handler))
    body = await ex.check_health(BUN.base_url)
    assert "refused" in body["error"]


# -- load generator backed executors ----------------------------------------

@pytest.mark.asyncio
async def test_throughput_parses_report():
    loadgen = FakeLoadGenerator()
    result = await make_executors(loadgen).throughput("Bun", BUN.base_url, "/api/todos", "30s", 50)
    assert loadgen.calls[0]["url"] == "http://bun.test/api/todos"
    assert loadgen.calls[0]["concurrency"] == 50
    assert result.requests_per_second == 2208.3779
    assert result.p99_latency_secs == "0.0883"
    assert result.error is None


@pytest.mark.asyncio
async def test_throughput_tool_failure_becomes_error_record():
    loadgen = FakeLoadGenerator(LoadGeneratorError("hey failed: exit code 1"))
    result = await make_executors(loadgen).throughput("Bun", BUN.base_url, "/api/todos", "30s", 50)
    assert result.error == "hey failed: exit code 1"
    assert result.requests_per_second == 0


@pytest.mark.asyncio
async def test_egress_mbps_from_total_bytes():
    result = await make_executors().network_egress("Bun", BUN.base_url, "10s", 10)
    assert result.endpoint == "/api/network/download/1024"
    assert result.total_bytes == 2 * 1024 * 1024
    assert result.total_mb == 2.0
    # 2 MiB over 10 s -> 1.677 Mbps
    assert result.throughput_mbps == 1.68


@pytest.mark.asyncio
async def test_inbound_mbps_from_successful_requests(tmp_path):
    loadgen = FakeLoadGenerator(hey_output(ok=100, errors=5))
    result = await make_executors(loadgen, tmp_path=tmp_path).network_inbound("Bun", BUN.base_url, "10s", 10)
    call = loadgen.calls[0]
    assert call["method"] == "POST"
    assert call["content_type"] == "application/octet-stream"
    assert (tmp_path / "payload.bin").stat().st_size == 1024 * 1024
    assert result.successful_requests == 100
    assert result.total_uploaded_bytes == 100 * 1024 * 1024
    assert result.throughput_mbps == 83.89


@pytest.mark.asyncio
async def test_concurrent_sessions_stops_below_threshold():
    def output(url, duration, concurrency, **kwargs):
        if concurrency <= 250:
            return hey_output(ok=1000)
        return hey_output(ok=800, errors=200)

    loadgen = FakeLoadGenerator(output)
    result = await make_executors(loadgen).concurrent_sessions("Bun", BUN.base_url, 1000)
    tested = [lvl.concurrency for lvl in result.tested_levels]
    assert tested == [100, 250, 500]
    assert all(call["duration"] == "10s" for call in loadgen.calls)
    assert result.tested_levels[-1].success_rate == 80.0
    assert result.max_sustained_concurrency == 250
    assert result.target_concurrency == 1000
    assert result.recommendation == "Server may struggle above 250 concurrent connections"


@pytest.mark.asyncio
async def test_concurrent_sessions_non_2xx_is_not_sustained():
    unavailable = "Status code distribution:\n  [503]\t1000 responses\n"
    loadgen = FakeLoadGenerator(unavailable)
    result = await make_executors(loadgen).concurrent_sessions("Bun", BUN.base_url, 500)
    assert len(result.tested_levels) == 1
    assert result.tested_levels[0].success_rate == 0.0
    assert result.max_sustained_concurrency == 0


@pytest.mark.asyncio
async def test_concurrent_sessions_mixed_status_codes():
    mixed = "Status code distribution:\n  [200]\t960 responses\n  [502]\t40 responses\n"
    result = await make_executors(FakeLoadGenerator(mixed)).concurrent_sessions("Bun", BUN.base_url, 100)
    assert [lvl.success_rate for lvl in result.tested_levels] == [96.0, 96.0]
    assert result.max_sustained_concurrency == 100


@pytest.mark.asyncio
async def test_inbound_payload_written_once(tmp_path):
    ex = make_executors(tmp_path=tmp_path)
    payload = tmp_path / "payload.bin"
    await ex.network_inbound("Bun", BUN.base_url, "10s", 10)
    first = payload.stat()

    await ex.network_inbound("Bun", BUN.base_url, "10s", 10)
    assert payload.stat().st_ino == first.st_ino
    assert payload.stat().st_mtime_ns == first.st_mtime_ns
    assert [p.name for p in tmp_path.iterdir()] == ["payload.bin"]


@pytest.mark.asyncio
async def test_inbound_payload_wrong_size_is_replaced(tmp_path):
    payload = tmp_path / "payload.bin"
    payload.write_bytes(b"partial")
    await make_executors(tmp_path=tmp_path).network_inbound("Bun", BUN.base_url, "10s", 10)
    assert payload.stat().st_size == 1024 * 1024
    assert [p.name for p in tmp_path.iterdir()] == ["payload.bin"]


@pytest.mark.asyncio
async def test_concurrent_sessions_reaches_target():
    result = await make_executors().concurrent_sessions("Bun", BUN.base_url, 100)
    assert result.max_sustained_concurrency == 100
    assert result.recommendation == "Server handles 100+ concurrent connections well"


@pytest.mark.asyncio
async def test_concurrent_sessions_tool_failure_stops_ramp():
    loadgen = FakeLoadGenerator(LoadGeneratorError("cannot execute hey"))
    result = await make_executors(loadgen).concurrent_sessions("Bun", BUN.base_url, 2000)
    assert len(result.tested_levels) == 1
    assert result.tested_levels[0].error == "cannot execute hey"
    assert result.max_sustained_concurrency == 0
