from __future__ import annotations

import collections
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any

import pandas as pd

from .classifier import Classification, OutcomeKind

ALL_CHECKS = "checks"

REQUEST_COLUMNS = [
    "actor_id",
    "outcome",
    "status",
    "message",
    "latency_s",
    "started_at",
]


@dataclass
class RequestRecord:
    actor_id: Any
    outcome: str
    status: int | None
    message: str
    latency_s: float
    started_at: float


class OutcomeCollector:
    """Thread-safe sink for outcome counters, checks and latency trends of one run.

    Workers call the ``record_*`` methods concurrently. Once :meth:`close` has
    been called the collector is frozen: anything recorded afterwards (from
    abandoned in-flight work) is counted as late and otherwise ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: collections.Counter[str] = collections.Counter()
        self._checks: dict[str, list[int]] = {}
        self._trends: dict[str, list[float]] = {}
        self._requests: list[RequestRecord] = []
        self._closed = False
        self._late = 0

    def record_outcome(
        self,
        actor_id: Any,
        classification: Classification,
        latency_s: float,
        started_at: float | None = None,
    ) -> None:
        record = RequestRecord(
            actor_id=actor_id,
            outcome=classification.kind.value,
            status=classification.status,
            message=classification.message,
            latency_s=latency_s,
            started_at=started_at if started_at is not None else time.time(),
        )
        with self._lock:
            if self._closed:
                self._late += 1
                return
            self._counters[classification.kind.value] += 1
            self._requests.append(record)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            if self._closed:
                self._late += 1
                return
            self._counters[name] += amount

    def record_check(self, name: str, passed: bool) -> bool:
        with self._lock:
            if self._closed:
                self._late += 1
                return passed
            tally = self._checks.setdefault(name, [0, 0])
            tally[0] += int(bool(passed))
            tally[1] += 1
        return passed

    def record_trend(self, name: str, value: float) -> None:
        with self._lock:
            if self._closed:
                self._late += 1
                return
            self._trends.setdefault(name, []).append(value)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def late(self) -> int:
        with self._lock:
            return self._late

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def outcome_counts(self) -> dict[str, int]:
        with self._lock:
            return {kind.value: self._counters.get(kind.value, 0) for kind in OutcomeKind}

    def total_outcomes(self) -> int:
        return sum(self.outcome_counts().values())

    def summaries(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def check_tally(self, name: str = ALL_CHECKS) -> tuple[int, int]:
        """Return ``(passes, total)`` for one check, or for all checks combined."""
        with self._lock:
            if name == ALL_CHECKS and name not in self._checks:
                passes = sum(tally[0] for tally in self._checks.values())
                total = sum(tally[1] for tally in self._checks.values())
                return passes, total
            passes, total = self._checks.get(name, (0, 0))
            return passes, total

    def check_names(self) -> list[str]:
        with self._lock:
            return sorted(self._checks)

    def trend(self, name: str) -> pd.Series:
        with self._lock:
            values = list(self._trends.get(name, ()))
        return pd.Series(values, dtype="float64", name=name)

    def trend_names(self) -> list[str]:
        with self._lock:
            return sorted(self._trends)

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [asdict(record) for record in self._requests]
        if not rows:
            return pd.DataFrame(columns=REQUEST_COLUMNS)
        return pd.DataFrame(rows, columns=REQUEST_COLUMNS)

    def describe_trend(self, name: str) -> dict[str, float]:
        series = self.trend(name)
        if series.empty:
            return {"count": 0}
        return {
            "count": int(series.count()),
            "avg": float(series.mean()),
            "min": float(series.min()),
            "med": float(series.median()),
            "p(95)": float(series.quantile(0.95)),
            "max": float(series.max()),
        }
