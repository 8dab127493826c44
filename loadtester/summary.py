"""Comparison of the two targets' results.

Everything here is a pure function of the results mapping. Results may be
pydantic records (live runs) or plain dicts (read back from disk), and any of
them may be missing or carry an ``error``; absent metrics count as zero and a
zero denominator yields ``"N/A"``.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence

from .models import Summary

NA = "N/A"


class Comparison(NamedTuple):
    key: str
    metric: str
    # True: A/B, bigger is better (rates). False: B/A, smaller is better (times).
    higher_is_better: bool


THROUGHPUT = Comparison("throughput", "requests_per_second", True)

SINGLE_COMPARISONS: Dict[str, Comparison] = {
    "throughput-todos": THROUGHPUT,
    "throughput-health": THROUGHPUT,
    "cpu-heavy": Comparison("cpu", "avg_duration_ms", False),
    "fibonacci": Comparison("fibonacci", "avg_duration_ms", False),
    "network-egress": Comparison("egress", "throughput_mbps", True),
    "network-inbound": Comparison("inbound", "throughput_mbps", True),
    "concurrent-sessions": Comparison("concurrency", "max_sustained_concurrency", True),
    "json-processing": Comparison("json", "avg_total_ms", False),
}

# (summary key, path into a suite result, comparison)
SUITE_COMPARISONS: List[tuple] = [
    ("throughputTodos", ("throughput", "todos"), THROUGHPUT),
    ("throughputHealth", ("throughput", "health"), THROUGHPUT),
    ("networkEgress", ("network_egress",), SINGLE_COMPARISONS["network-egress"]),
    ("networkInbound", ("network_inbound",), SINGLE_COMPARISONS["network-inbound"]),
    ("cpu", ("cpu",), SINGLE_COMPARISONS["cpu-heavy"]),
    ("fibonacci", ("fibonacci",), SINGLE_COMPARISONS["fibonacci"]),
    ("concurrent", ("concurrent",), SINGLE_COMPARISONS["concurrent-sessions"]),
    ("json", ("json_processing",), SINGLE_COMPARISONS["json-processing"]),
]


def field_of(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def path_of(obj: Any, path: Sequence[str]) -> Any:
    for name in path:
        obj = field_of(obj, name)
    return obj


def number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def ratio(numerator: float, denominator: float) -> str:
    if not denominator:
        return NA
    return f"{numerator / denominator:.2f}"


def compare(a: Any, b: Any, comparison: Comparison) -> str:
    a_val = number(field_of(a, comparison.metric))
    b_val = number(field_of(b, comparison.metric))
    if comparison.higher_is_better:
        return ratio(a_val, b_val)
    return ratio(b_val, a_val)


def calculate_summary(
    results: Optional[Mapping[str, Any]],
    test_type: str,
    target_keys: Sequence[str] = ("bun", "nodejs"),
) -> Summary:
    results = results or {}
    key_a, key_b = target_keys
    a = results.get(key_a)
    b = results.get(key_b)
    summary = Summary(test_type=test_type)

    if test_type == "full-suite":
        for name, path, comparison in SUITE_COMPARISONS:
            sub_a = path_of(a, path)
            sub_b = path_of(b, path)
            if sub_a is None or sub_b is None:
                continue
            summary.improvements[name] = compare(sub_a, sub_b, comparison)
        return summary

    comparison = SINGLE_COMPARISONS.get(test_type)
    if comparison is None:
        return summary

    summary.improvements[comparison.key] = compare(a, b, comparison)
    summary.metric = comparison.metric
    summary.values = {
        key_a: number(field_of(a, comparison.metric)),
        key_b: number(field_of(b, comparison.metric)),
    }
    return summary


# ---------------------------------------------------------------------------
# History index projection
# ---------------------------------------------------------------------------

def _project(record: Any, fields: Sequence[tuple]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for out_key, path, default in fields:
        value = path_of(record, path)
        out[out_key] = default if value in (None, "") else value
    return out


_DETAIL_FIELDS: Dict[str, List[tuple]] = {
    "throughput": [
        ("rps", ("requests_per_second",), 0),
        ("avgLatency", ("avg_latency_secs",), "0"),
        ("p99Latency", ("p99_latency_secs",), "0"),
        ("totalRequests", ("total_requests",), 0),
    ],
    "cpu-heavy": [
        ("avgMs", ("avg_duration_ms",), 0),
        ("minMs", ("min_duration_ms",), 0),
        ("maxMs", ("max_duration_ms",), 0),
        ("iterations", ("iterations",), 0),
    ],
    "fibonacci": [
        ("avgMs", ("avg_duration_ms",), 0),
        ("n", ("n",), 40),
        ("result", ("result",), 0),
        ("iterations", ("iterations",), 0),
    ],
    "network-egress": [
        ("throughputMbps", ("throughput_mbps",), 0),
        ("rps", ("requests_per_second",), 0),
        ("totalMb", ("total_mb",), 0),
        ("avgLatency", ("avg_latency_secs",), "0"),
    ],
    "network-inbound": [
        ("throughputMbps", ("throughput_mbps",), 0),
        ("rps", ("requests_per_second",), 0),
        ("totalUploadedMb", ("total_uploaded_mb",), 0),
        ("avgLatency", ("avg_latency_secs",), "0"),
    ],
    "concurrent-sessions": [
        ("maxConcurrency", ("max_sustained_concurrency",), 0),
        ("recommendation", ("recommendation",), ""),
    ],
    "json-processing": [
        ("avgTotalMs", ("avg_total_ms",), 0),
        ("avgStringifyMs", ("avg_stringify_ms",), 0),
        ("avgParseMs", ("avg_parse_ms",), 0),
        ("jsonSizeKb", ("json_size_kb",), 0),
        ("iterations", ("iterations",), 0),
    ],
    "full-suite": [
        ("throughputTodos", ("throughput", "todos", "requests_per_second"), 0),
        ("throughputHealth", ("throughput", "health", "requests_per_second"), 0),
        ("cpuAvgMs", ("cpu", "avg_duration_ms"), 0),
        ("fibAvgMs", ("fibonacci", "avg_duration_ms"), 0),
        ("networkEgressMbps", ("network_egress", "throughput_mbps"), 0),
        ("networkInboundMbps", ("network_inbound", "throughput_mbps"), 0),
        ("maxConcurrent", ("concurrent", "max_sustained_concurrency"), 0),
        ("jsonAvgMs", ("json_processing", "avg_total_ms"), 0),
    ],
}


def extract_run_details(
    results: Optional[Mapping[str, Any]],
    test_type: str,
    target_keys: Sequence[str] = ("bun", "nodejs"),
) -> Dict[str, Dict[str, Any]]:
    """Flattened key metrics per target, for list views of the history index."""
    results = results or {}
    kind = "throughput" if test_type.startswith("throughput") else test_type
    fields = _DETAIL_FIELDS.get(kind, [])
    details: Dict[str, Dict[str, Any]] = {}
    for key in target_keys:
        record = results.get(key)
        projected = _project(record, fields)
        if kind == "concurrent-sessions":
            projected["testedLevels"] = len(field_of(record, "tested_levels") or [])
        details[key] = projected
    return details
