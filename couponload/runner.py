from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import httpx

from .allocation import AllocationCall, FixedActorAllocation, RandomActorAllocation
from .classifier import ErrorVocabulary
from .collector import OutcomeCollector
from .config import CONSTANT_RATE, GATE_POLLING, PER_ACTOR, ScenarioProfile
from .gate import GatePoller, GateSpike
from .load import (
    ArrivalRateExecutor,
    LoadStatistics,
    PerActorExecutor,
    RampingWorkersExecutor,
)
from .provisioner import BootstrapProvisioner, ProvisionedRun
from .thresholds import ThresholdResult, evaluate_thresholds, parse_thresholds
from .verifier import VerificationResult, verify_completion_log

LOGGER = logging.getLogger("couponload.runner")

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_GATE_URL = "http://127.0.0.1:8000"
JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass
class RunSettings:
    base_url: str = DEFAULT_BASE_URL
    gate_url: str = DEFAULT_GATE_URL
    request_timeout_s: float = 30.0
    vocabulary: ErrorVocabulary = field(default_factory=ErrorVocabulary.default)
    transport: httpx.BaseTransport | None = None


@dataclass
class RunReport:
    profile: ScenarioProfile
    collector: OutcomeCollector
    statistics: LoadStatistics
    thresholds: list[ThresholdResult]
    provisioned: ProvisionedRun | None = None
    verification: VerificationResult | None = None

    @property
    def passed(self) -> bool:
        if not all(result.passed for result in self.thresholds):
            return False
        return self.verification is None or self.verification.passed

    def summary(self) -> dict[str, Any]:
        stats = self.statistics
        summary: dict[str, Any] = {
            "profile": self.profile.name,
            "kind": self.profile.kind,
            "passed": self.passed,
            "iterations": {
                "started": stats.started,
                "completed": stats.completed,
                "failed": stats.failed,
                "dropped": stats.dropped,
                "late": stats.late,
                "abandoned": stats.abandoned,
                "duration_s": round(stats.duration_s, 3),
                "per_second": round(stats.throughput_per_second, 2),
            },
            "counters": self.collector.summaries(),
            "checks": {
                name: dict(zip(("passes", "total"), self.collector.check_tally(name)))
                for name in self.collector.check_names()
            },
            "trends": {name: self.collector.describe_trend(name) for name in self.collector.trend_names()},
            "late_records": self.collector.late,
            "thresholds": [
                {
                    "metric": result.threshold.metric,
                    "expression": result.threshold.expression,
                    "observed": result.observed,
                    "passed": result.passed,
                }
                for result in self.thresholds
            ],
        }
        if self.profile.is_issuer_run:
            summary["outcomes"] = self.collector.outcome_counts()
        if self.provisioned is not None:
            summary["coupon_id"] = self.provisioned.coupon_id
            summary["actors"] = len(self.provisioned.actor_ids)
        if self.verification is not None:
            summary["verification"] = {
                "mode": self.verification.mode.value,
                "passed": self.verification.passed,
                "completions": len(self.verification.sequences),
                "sequences": self.verification.sequences,
            }
        return summary


def create_client(
    base_url: str,
    pool_size: int,
    settings: RunSettings,
) -> httpx.Client:
    limits = httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size)
    kwargs: dict[str, Any] = {
        "base_url": base_url,
        "headers": JSON_HEADERS,
        "timeout": settings.request_timeout_s,
        "limits": limits,
    }
    if settings.transport is not None:
        kwargs["transport"] = settings.transport
    return httpx.Client(**kwargs)


def pool_size_for(profile: ScenarioProfile) -> int:
    if profile.kind == CONSTANT_RATE:
        size = max(profile.max_workers, profile.batch_size)
    elif profile.kind == PER_ACTOR:
        size = max(profile.actor_count, profile.batch_size)
    else:
        size = int(max((stage.target for stage in profile.stages), default=1))
    return max(size, 1)


def run_scenario(profile: ScenarioProfile, settings: RunSettings | None = None) -> RunReport:
    """Execute one scenario end to end.

    Raises ``ProvisioningError`` or ``VerificationChannelError`` when the run
    has to be aborted; every other failure is folded into the report.
    """
    settings = settings or RunSettings()
    if profile.is_issuer_run:
        return _run_issuer(profile, settings)
    return _run_gate(profile, settings)


def _run_issuer(profile: ScenarioProfile, settings: RunSettings) -> RunReport:
    thresholds = parse_thresholds(profile.thresholds)
    collector = OutcomeCollector()
    stop_event = threading.Event()
    with create_client(settings.base_url, pool_size_for(profile), settings) as client:
        provisioner = BootstrapProvisioner(
            client,
            batch_size=profile.batch_size,
            timeout_s=profile.setup_timeout_s,
        )
        provisioned = provisioner.provision(profile.actor_count, profile.quantity)
        call = AllocationCall(client, provisioned.coupon_id, collector, settings.vocabulary)

        if profile.kind == CONSTANT_RATE:
            executor: Any = ArrivalRateExecutor(
                profile.schedule(),
                max_workers=profile.max_workers,
                max_duration_s=profile.max_duration_s,
                stop_event=stop_event,
            )
            iteration: Any = RandomActorAllocation(call, provisioned.actor_ids)
        else:
            executor = PerActorExecutor(
                workers=len(provisioned.actor_ids),
                iterations=1,
                max_duration_s=profile.planned_duration_s(),
                stop_event=stop_event,
            )
            iteration = FixedActorAllocation(call, provisioned.actor_ids)

        LOGGER.info("Running %s against coupon %s", profile.name, provisioned.coupon_id)
        statistics = executor.run(iteration)
        collector.close()
        _log_statistics(profile, statistics)

        verification = None
        if profile.verification is not None:
            verification = verify_completion_log(
                client,
                provisioned.coupon_id,
                profile.verification,
                quantity=provisioned.quantity,
            )

    results = evaluate_thresholds(thresholds, collector)
    return RunReport(
        profile=profile,
        collector=collector,
        statistics=statistics,
        thresholds=results,
        provisioned=provisioned,
        verification=verification,
    )


def _run_gate(profile: ScenarioProfile, settings: RunSettings) -> RunReport:
    thresholds = parse_thresholds(profile.thresholds)
    collector = OutcomeCollector()
    stop_event = threading.Event()
    with create_client(settings.gate_url, pool_size_for(profile), settings) as client:
        if profile.kind == GATE_POLLING:
            workload: Any = GatePoller(
                client,
                profile.event_id,
                collector,
                poll_interval_s=profile.poll_interval_s,
                max_attempts=profile.max_attempts,
                stop_event=stop_event,
            )
        else:
            workload = GateSpike(client, profile.event_id, collector)

        executor = RampingWorkersExecutor(
            profile.schedule(),
            max_duration_s=profile.max_duration_s,
            think_time_s=profile.think_time_s,
            stop_event=stop_event,
        )
        LOGGER.info("Running %s against gate event %s", profile.name, profile.event_id)
        statistics = executor.run(workload)
        collector.close()
        _log_statistics(profile, statistics)

    results = evaluate_thresholds(thresholds, collector)
    return RunReport(
        profile=profile,
        collector=collector,
        statistics=statistics,
        thresholds=results,
    )


def _log_statistics(profile: ScenarioProfile, statistics: LoadStatistics) -> None:
    LOGGER.info(
        "%s: %d iteration(s) started, %d completed, %d dropped, %d late, %d abandoned in %.2fs (%.2f/s)",
        profile.name,
        statistics.started,
        statistics.completed,
        statistics.dropped,
        statistics.late,
        statistics.abandoned,
        statistics.duration_s,
        statistics.throughput_per_second,
    )
