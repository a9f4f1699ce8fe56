"""Run metrics: job and copy counters plus wait timings."""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List


class MetricsCollector:
    """
    Counts what a run did and how long it waited.
    Implements IMetricsCollector protocol.
    """

    def __init__(self):
        self._started = time.monotonic()
        self._counters: Dict[str, int] = defaultdict(int)
        self._durations: Dict[str, List[float]] = defaultdict(list)

    def increment_counter(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def record_duration(self, name: str, seconds: float) -> None:
        self._durations[name].append(seconds)

    def get_durations(self, name: str) -> List[float]:
        return list(self._durations.get(name, []))

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Record how long the block took, also when it raises."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.record_duration(name, time.monotonic() - start)

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def format_summary(self) -> List[str]:
        """
        Summary as log lines: counters sorted by name, then one line per
        timed section with its count, total and longest wait.
        """
        lines = [f"Total elapsed: {self.elapsed():.1f}s"]
        for name, value in sorted(self._counters.items()):
            lines.append(f"  {name}: {value}")
        for name, values in sorted(self._durations.items()):
            if values:
                lines.append(
                    f"  {name}: count={len(values)} total={sum(values):.1f}s max={max(values):.1f}s"
                )
        return lines
