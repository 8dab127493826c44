import threading
from collections import defaultdict, deque
from typing import Deque, Dict, List

PHASE_WINDOW = 200
QUANTILES = (0.5, 0.95)


class Metrics:
    """Orchestrator counters and gauges, plus phase durations per test type.

    A `hey` phase lasts tens of seconds while a CPU phase lasts milliseconds,
    so durations are only summarized within one test type.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.phase_ms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=PHASE_WINDOW))

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self.gauges[name] = value

    def add_gauge(self, name: str, delta: float) -> None:
        with self._lock:
            self.gauges[name] += delta

    def observe_phase_ms(self, test_type: str, value: float) -> None:
        with self._lock:
            self.phase_ms[test_type].append(float(value))

    def phase_quantile(self, test_type: str, q: float) -> float:
        with self._lock:
            window = sorted(self.phase_ms.get(test_type, ()))
        return _nearest_rank(window, q)

    def snapshot(self) -> str:
        with self._lock:
            counters = sorted(self.counters.items())
            gauges = sorted(self.gauges.items())
            phases = {k: sorted(v) for k, v in sorted(self.phase_ms.items())}

        lines: List[str] = []
        for k, v in counters:
            lines.append(f"# TYPE {k} counter")
            lines.append(f"{k} {v}")
        for k, v in gauges:
            lines.append(f"# TYPE {k} gauge")
            lines.append(f"{k} {v}")

        if phases:
            lines.append("# TYPE phase_duration_ms summary")
            for test_type, window in phases.items():
                for q in QUANTILES:
                    value = _nearest_rank(window, q)
                    lines.append(f'phase_duration_ms{{test_type="{test_type}",quantile="{q}"}} {value}')
                lines.append(f'phase_duration_ms_count{{test_type="{test_type}"}} {len(window)}')
        return "\n".join(lines) + "\n"


def _nearest_rank(values: List[float], q: float) -> float:
    if not values:
        return 0.0
    return float(values[int(q * (len(values) - 1))])


metrics = Metrics()
