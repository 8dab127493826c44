"""Parsing of `hey` text reports.

The load generator prints a human-readable summary; only a handful of lines
matter here. Lines are scanned independently by label so that reordering or
extra sections in the report do not break extraction, and nothing in this
module raises on odd input: a missing or garbled line just leaves its field
at zero.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

_UNIT_MULTIPLIERS = {
    "b": 1,
    "byte": 1,
    "bytes": 1,
    "kb": 1024,
    "kilobytes": 1024,
    "mb": 1024 * 1024,
    "megabytes": 1024 * 1024,
    "gb": 1024 * 1024 * 1024,
    "gigabytes": 1024 * 1024 * 1024,
}

_TOTAL_DATA_RE = re.compile(r"Total data:\s+([\d.]+)\s*(\w+)")
_STATUS_LINE_RE = re.compile(r"^\s*\[(\d{3})\]\s+(\d+)\s+responses?")
_ERROR_LINE_RE = re.compile(r"^\s*\[(\d+)\]\s+\S")
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")


@dataclass
class HeyReport:
    rps: float = 0.0
    avg_latency: str = "0"
    p99_latency: str = "0"
    total_requests: float = 0.0
    total_bytes: float = 0.0
    status_codes: Dict[int, int] = field(default_factory=dict)
    error_count: int = 0

    @property
    def successful_requests(self) -> int:
        return sum(n for code, n in self.status_codes.items() if 200 <= code < 300)


def _to_float(raw: Optional[str]) -> float:
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        return 0.0


def _after_colon(line: str) -> str:
    parts = line.split(":", 1)
    if len(parts) < 2:
        return ""
    return parts[1].strip()


def _first_token(text: str) -> Optional[str]:
    tokens = text.split()
    return tokens[0] if tokens else None


def parse_hey_output(output: str) -> HeyReport:
    report = HeyReport()
    rps_seen = p99_seen = total_seen = data_seen = False
    section = None

    for line in (output or "").splitlines():
        stripped = line.strip()

        if stripped.startswith("Status code distribution:"):
            section = "status"
            continue
        if stripped.startswith("Error distribution:"):
            section = "errors"
            continue

        if section == "status":
            m = _STATUS_LINE_RE.match(line)
            if m:
                code = int(m.group(1))
                report.status_codes[code] = report.status_codes.get(code, 0) + int(m.group(2))
                continue
            if stripped:
                section = None
        elif section == "errors":
            m = _ERROR_LINE_RE.match(line)
            if m:
                report.error_count += int(m.group(1))
                continue
            if stripped:
                section = None

        if "Requests/sec:" in line and not rps_seen:
            report.rps = _to_float(_first_token(_after_colon(line)))
            rps_seen = True

        # Only the summary Average has a decimal; later sections must not override it.
        if "Average:" in line and "." not in report.avg_latency:
            report.avg_latency = _first_token(_after_colon(line)) or "0"

        if "99%" in line and not p99_seen:
            for token in stripped.split()[1:]:
                if _NUMBER_RE.match(token):
                    report.p99_latency = token
                    p99_seen = True
                    break

        if "Total:" in line and not total_seen:
            report.total_requests = _to_float(_first_token(_after_colon(line)))
            total_seen = True

        if "Total data:" in line and not data_seen:
            m = _TOTAL_DATA_RE.search(line)
            if m:
                multiplier = _UNIT_MULTIPLIERS.get(m.group(2).lower(), 1)
                report.total_bytes = _to_float(m.group(1)) * multiplier
                data_seen = True

    # The distribution blocks give a real request count; "Total:" is a fallback.
    if report.status_codes or report.error_count:
        report.total_requests = float(sum(report.status_codes.values()) + report.error_count)

    return report


def parse_duration_secs(duration: str) -> float:
    """'30s' -> 30.0, '2m' -> 120.0, '45' -> 45.0. Unparseable values give 0."""
    text = str(duration).strip().lower()
    scale = 1.0
    if text.endswith("ms"):
        text, scale = text[:-2], 0.001
    elif text.endswith("s"):
        text = text[:-1]
    elif text.endswith("m"):
        text, scale = text[:-1], 60.0
    elif text.endswith("h"):
        text, scale = text[:-1], 3600.0
    return _to_float(text) * scale
