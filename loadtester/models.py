from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RunStatus = Literal["running", "complete", "error"]


@dataclass(frozen=True)
class BenchmarkKind:
    name: str
    endpoint: str
    type: str
    description: str


TEST_TYPES: Dict[str, BenchmarkKind] = {
    "throughput-todos": BenchmarkKind(
        "HTTP Throughput (/api/todos)", "/api/todos", "throughput",
        "Measure requests per second on the todos endpoint",
    ),
    "throughput-health": BenchmarkKind(
        "HTTP Throughput (/api/health)", "/api/health", "throughput",
        "Measure requests per second on the health endpoint",
    ),
    "cpu-heavy": BenchmarkKind(
        "CPU Heavy (100k Sort)", "/api/cpu-heavy", "cpu",
        "Generate and sort 100,000 random numbers",
    ),
    "fibonacci": BenchmarkKind(
        "Fibonacci (n=40)", "/api/fibonacci/40", "fibonacci",
        "Recursive Fibonacci calculation",
    ),
    "network-egress": BenchmarkKind(
        "Network Egress (Mbps)", "/api/network/download/1024", "network-egress",
        "Measure outbound network throughput (server -> client)",
    ),
    "network-inbound": BenchmarkKind(
        "Network Inbound (Mbps)", "/api/network/upload", "network-inbound",
        "Measure inbound network throughput (client -> server)",
    ),
    "concurrent-sessions": BenchmarkKind(
        "Max Concurrent Sessions", "/api/network/hold/1000", "concurrent-sessions",
        "Test maximum concurrent connections the server can handle",
    ),
    "json-processing": BenchmarkKind(
        "JSON Parse/Serialize", "/api/json-benchmark/medium", "json",
        "Measure JSON stringify and parse performance",
    ),
    "full-suite": BenchmarkKind(
        "Full Benchmark Suite", "all", "suite",
        "Run all tests sequentially",
    ),
}


@dataclass(frozen=True)
class Target:
    key: str
    label: str
    base_url: str


# ---------------------------------------------------------------------------
# Per-target result records. `kind` tags the variant; `error`, when set, means
# the numeric fields were left at their defaults.
# ---------------------------------------------------------------------------

class ResultBase(BaseModel):
    test: str
    error: Optional[str] = None


class ThroughputResult(ResultBase):
    kind: Literal["throughput"] = "throughput"
    endpoint: str
    duration: str = ""
    concurrency: int = 0
    requests_per_second: float = 0.0
    avg_latency_secs: str = "0"
    p99_latency_secs: str = "0"
    total_requests: float = 0.0
    raw_output: str = ""


class CpuResult(ResultBase):
    kind: Literal["cpu"] = "cpu"
    operation: str = "generate_and_sort_100k_numbers"
    iterations: int = 0
    avg_duration_ms: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    all_durations_ms: List[float] = Field(default_factory=list)


class FibonacciResult(ResultBase):
    kind: Literal["fibonacci"] = "fibonacci"
    operation: str = "fibonacci"
    n: int = 40
    result: int = 0
    iterations: int = 0
    avg_duration_ms: float = 0.0
    all_durations_ms: List[float] = Field(default_factory=list)


class JsonResult(ResultBase):
    kind: Literal["json"] = "json"
    endpoint: str
    iterations: int = 0
    successful_iterations: int = 0
    avg_stringify_ms: float = 0.0
    avg_parse_ms: float = 0.0
    avg_total_ms: float = 0.0
    json_size_kb: float = 0.0


class NetworkEgressResult(ResultBase):
    kind: Literal["network-egress"] = "network-egress"
    endpoint: str
    duration: str = ""
    concurrency: int = 0
    payload_size_kb: int = 0
    total_requests: float = 0.0
    total_bytes: float = 0.0
    total_mb: float = 0.0
    requests_per_second: float = 0.0
    throughput_mbps: float = 0.0
    avg_latency_secs: str = "0"
    p99_latency_secs: str = "0"
    raw_output: str = ""


class NetworkInboundResult(ResultBase):
    kind: Literal["network-inbound"] = "network-inbound"
    endpoint: str
    duration: str = ""
    concurrency: int = 0
    payload_size_kb: int = 0
    total_requests: float = 0.0
    successful_requests: int = 0
    total_uploaded_bytes: int = 0
    total_uploaded_mb: float = 0.0
    requests_per_second: float = 0.0
    throughput_mbps: float = 0.0
    avg_latency_secs: str = "0"
    p99_latency_secs: str = "0"
    raw_output: str = ""


class ConcurrencyLevelResult(BaseModel):
    concurrency: int
    total_requests: float = 0.0
    requests_per_second: float = 0.0
    avg_latency_secs: str = "0"
    success_rate: float = 0.0
    errors: int = 0
    error: Optional[str] = None


class ConcurrentSessionsResult(ResultBase):
    kind: Literal["concurrent-sessions"] = "concurrent-sessions"
    endpoint: str
    duration: str = ""
    tested_levels: List[ConcurrencyLevelResult] = Field(default_factory=list)
    max_sustained_concurrency: int = 0
    target_concurrency: int = 0
    recommendation: str = ""


class SuiteResult(ResultBase):
    kind: Literal["suite"] = "suite"
    throughput: Dict[str, ThroughputResult] = Field(default_factory=dict)
    network_egress: Optional[NetworkEgressResult] = None
    network_inbound: Optional[NetworkInboundResult] = None
    cpu: Optional[CpuResult] = None
    fibonacci: Optional[FibonacciResult] = None
    concurrent: Optional[ConcurrentSessionsResult] = None
    json_processing: Optional[JsonResult] = None


ResultRecord = Annotated[
    Union[
        ThroughputResult,
        CpuResult,
        FibonacciResult,
        JsonResult,
        NetworkEgressResult,
        NetworkInboundResult,
        ConcurrentSessionsResult,
        SuiteResult,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# API-facing models (camelCase on the wire)
# ---------------------------------------------------------------------------

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunConfig(ApiModel):
    duration: str
    concurrency: int
    iterations: int
    max_concurrency: int
    suite_duration_minutes: int


class RunRequest(ApiModel):
    test_type: Optional[str] = None
    duration: Optional[str] = None
    concurrency: Optional[int] = Field(default=None, gt=0)
    iterations: Optional[int] = Field(default=None, gt=0)
    max_concurrency: Optional[int] = Field(default=None, gt=0)
    suite_duration_minutes: Optional[int] = Field(default=None, gt=0)

    def resolve(self, settings: Any) -> RunConfig:
        return RunConfig(
            duration=self.duration or settings.default_duration,
            concurrency=self.concurrency or settings.default_concurrency,
            iterations=self.iterations or settings.default_iterations,
            max_concurrency=self.max_concurrency or settings.default_max_concurrency,
            suite_duration_minutes=self.suite_duration_minutes or settings.default_suite_minutes,
        )


class Summary(ApiModel):
    test_type: str
    improvements: Dict[str, str] = Field(default_factory=dict)
    metric: Optional[str] = None
    values: Dict[str, float] = Field(default_factory=dict)


class Run(ApiModel):
    id: str
    test_type: str
    config: RunConfig
    status: RunStatus = "running"
    progress: int = 0
    progress_text: str = "Initializing..."
    start_time: str
    end_time: Optional[str] = None
    results: Dict[str, Optional[ResultRecord]] = Field(default_factory=dict)
    summary: Optional[Summary] = None
    error: Optional[str] = None

    def advance(self, progress: int, text: str) -> None:
        # progress never moves backwards within a run
        self.progress = max(self.progress, progress)
        self.progress_text = text


class IndexEntry(ApiModel):
    id: str
    test_type: str
    test_name: str
    start_time: str
    end_time: Optional[str] = None
    config: RunConfig
    summary: Optional[Summary] = None
    details: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
