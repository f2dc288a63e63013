from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Iterable, Mapping

from .allocation import REQUEST_DURATION
from .classifier import OutcomeKind
from .collector import ALL_CHECKS, OutcomeCollector
from .errors import ConfigurationError
from .gate import CHECK_ADMITTED, CHECK_ENQUEUED, ENQUEUE_DURATION, POLL_ERRORS, WAITING_TIME

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>count|rate|avg|min|max|med|p\((?P<pct>\d+(?:\.\d+)?)\))"
    r"\s*(?P<op>==|!=|<=|>=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?)\s*$"
)

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<=": operator.le,
    ">=": operator.ge,
    "<": operator.lt,
    ">": operator.gt,
}

_TREND_AGGREGATIONS = {"avg", "min", "max", "med"}

COUNTER_METRICS = frozenset([kind.value for kind in OutcomeKind] + [POLL_ERRORS])
CHECK_METRICS = frozenset([ALL_CHECKS, CHECK_ENQUEUED, CHECK_ADMITTED])
TREND_METRICS = frozenset([REQUEST_DURATION, WAITING_TIME, ENQUEUE_DURATION])

_ALLOWED_AGGREGATIONS = {
    **{metric: {"count"} for metric in COUNTER_METRICS},
    **{metric: {"count", "rate"} for metric in CHECK_METRICS},
    **{metric: {"count", "p"} | _TREND_AGGREGATIONS for metric in TREND_METRICS},
}


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregation: str
    percentile: float | None
    op: str
    value: float

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ConfigurationError(f"invalid threshold for {metric!r}: {expression!r}")
        pct = match.group("pct")
        aggregation = "p" if pct is not None else match.group("agg")
        percentile = float(pct) if pct is not None else None
        if percentile is not None and not 0 <= percentile <= 100:
            raise ConfigurationError(f"percentile out of range in {expression!r}")
        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            percentile=percentile,
            op=match.group("op"),
            value=float(match.group("value")),
        )


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float | None
    passed: bool

    def describe(self) -> str:
        observed = "no data" if self.observed is None else f"{self.observed:g}"
        verdict = "ok" if self.passed else "FAILED"
        return f"{self.threshold.metric} {self.threshold.expression} (observed {observed}): {verdict}"


def parse_thresholds(definitions: Mapping[str, Iterable[str]]) -> list[Threshold]:
    thresholds = []
    for metric, expressions in definitions.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        thresholds.extend(
            validate_threshold(Threshold.parse(metric, expression)) for expression in expressions
        )
    return thresholds


def validate_threshold(threshold: Threshold) -> Threshold:
    """Reject metrics the harness never records and aggregations a metric cannot have."""
    allowed = _ALLOWED_AGGREGATIONS.get(threshold.metric)
    if allowed is None:
        known = ", ".join(sorted(_ALLOWED_AGGREGATIONS))
        raise ConfigurationError(f"unknown threshold metric {threshold.metric!r}; choose from {known}")
    if threshold.aggregation not in allowed:
        raise ConfigurationError(
            f"{threshold.expression!r} is not defined for {threshold.metric!r}; "
            f"it supports {', '.join(sorted(allowed))}"
        )
    return threshold


def observe(threshold: Threshold, collector: OutcomeCollector) -> float | None:
    metric = threshold.metric
    aggregation = threshold.aggregation

    if metric == ALL_CHECKS or metric in collector.check_names():
        passes, total = collector.check_tally(metric)
        if aggregation == "count":
            return float(total)
        if aggregation == "rate":
            return passes / total if total else None
        raise ConfigurationError(f"{aggregation!r} is not defined for check {metric!r}")

    if metric in collector.trend_names():
        series = collector.trend(metric)
        if aggregation == "count":
            return float(series.count())
        if series.empty:
            return None
        if aggregation == "p":
            return float(series.quantile(threshold.percentile / 100.0))
        if aggregation == "avg":
            return float(series.mean())
        if aggregation == "med":
            return float(series.median())
        if aggregation in _TREND_AGGREGATIONS:
            return float(getattr(series, aggregation)())
        raise ConfigurationError(f"{aggregation!r} is not defined for trend {metric!r}")

    if aggregation == "count":
        return float(collector.counter(metric))
    if aggregation in _TREND_AGGREGATIONS or aggregation == "p":
        # A trend with no samples was never registered.
        return None
    raise ConfigurationError(f"{aggregation!r} is not defined for counter {metric!r}")


def evaluate_thresholds(
    thresholds: Iterable[Threshold],
    collector: OutcomeCollector,
) -> list[ThresholdResult]:
    results = []
    for threshold in thresholds:
        observed = observe(threshold, collector)
        passed = observed is not None and _OPERATORS[threshold.op](observed, threshold.value)
        results.append(ThresholdResult(threshold=threshold, observed=observed, passed=passed))
    return results
