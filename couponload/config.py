from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError
from .pacing import Stage, constant_rate, total_duration
from .thresholds import parse_thresholds
from .verifier import VerificationMode

CONSTANT_RATE = "constant-rate"
PER_ACTOR = "per-actor"
GATE_POLLING = "gate-polling"
GATE_SPIKE = "gate-spike"

KINDS = (CONSTANT_RATE, PER_ACTOR, GATE_POLLING, GATE_SPIKE)
ISSUER_KINDS = (CONSTANT_RATE, PER_ACTOR)


@dataclass(frozen=True)
class ScenarioProfile:
    """Everything one run needs: workload shape, sizing, safety bounds and pass criteria."""

    name: str
    kind: str
    actor_count: int = 0
    quantity: int = 0
    rate: float = 0.0
    duration_s: float = 0.0
    stages: tuple[Stage, ...] = ()
    max_workers: int = 100
    batch_size: int = 5000
    poll_interval_s: float = 3.0
    max_attempts: int = 40
    max_duration_s: float | None = None
    setup_timeout_s: float = 180.0
    think_time_s: float = 0.0
    event_id: int = 1001
    verification: VerificationMode | None = None
    thresholds: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    description: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise ConfigurationError(f"unknown scenario kind {self.kind!r}, expected one of {KINDS}")
        if self.kind in ISSUER_KINDS and self.actor_count <= 0:
            raise ConfigurationError(f"{self.name}: actor_count must be > 0")
        if self.kind in ISSUER_KINDS and self.quantity <= 0:
            raise ConfigurationError(f"{self.name}: quantity must be > 0")
        if self.kind == CONSTANT_RATE and not self.stages and (self.rate <= 0 or self.duration_s <= 0):
            raise ConfigurationError(f"{self.name}: constant-rate needs rate and duration_s > 0")
        if self.kind in (GATE_POLLING, GATE_SPIKE) and not self.stages:
            raise ConfigurationError(f"{self.name}: {self.kind} needs ramp stages")
        if self.verification is VerificationMode.DENSE and self.kind not in ISSUER_KINDS:
            raise ConfigurationError(f"{self.name}: dense verification only applies to issuer runs")
        try:
            parse_thresholds(self.thresholds)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{self.name}: {exc}") from exc

    @property
    def is_issuer_run(self) -> bool:
        return self.kind in ISSUER_KINDS

    def schedule(self) -> list[Stage]:
        """Rate stages for constant-rate runs, worker stages for gate runs."""
        if self.stages:
            return list(self.stages)
        if self.kind == CONSTANT_RATE:
            return constant_rate(self.rate, self.duration_s)
        return []

    def planned_duration_s(self) -> float:
        if self.kind == PER_ACTOR:
            return self.max_duration_s or 60.0
        return total_duration(self.schedule())


def builtin_profiles() -> dict[str, ScenarioProfile]:
    """Return the stock scenarios, keyed by name."""

    issue_constant_rate = ScenarioProfile(
        name="issue-constant-rate",
        kind=CONSTANT_RATE,
        description="Random users hammer one coupon at a fixed arrival rate.",
        actor_count=100_000,
        quantity=10_000,
        rate=15_000,
        duration_s=120,
        max_workers=20_000,
        batch_size=5_000,
        setup_timeout_s=180,
        verification=VerificationMode.MONOTONIC,
        thresholds={"success": ("count==10000",)},
    )
    issue_per_actor = ScenarioProfile(
        name="issue-per-actor",
        kind=PER_ACTOR,
        description="100 distinct users request a 30-unit coupon at the same instant.",
        actor_count=100,
        quantity=30,
        max_duration_s=60,
        batch_size=100,
        verification=VerificationMode.DENSE,
        thresholds={
            "success": ("count==30",),
            "out_of_stock": ("count==70",),
            "duplicate": ("count==0",),
            "lock_timeout": ("count==0",),
        },
    )
    gate_polling = ScenarioProfile(
        name="gate-polling",
        kind=GATE_POLLING,
        description="Users enqueue at the gate and poll until admitted.",
        stages=(
            Stage(10, 100),
            Stage(20, 1000),
            Stage(60, 2000),
            Stage(10, 0),
        ),
        poll_interval_s=3.0,
        max_attempts=40,
        thresholds={
            "waiting_time": ("p(95)<60000",),
            "checks": ("rate>0.99",),
        },
    )
    gate_spike = ScenarioProfile(
        name="gate-spike",
        kind=GATE_SPIKE,
        description="Ticket-opening spike of enqueue requests against the gate.",
        stages=(
            Stage(10, 50),
            Stage(10, 1000),
            Stage(60, 2000),
            Stage(30, 0),
        ),
        think_time_s=0.05,
        thresholds={
            "checks": ("rate>0.99",),
            "enqueue_duration": ("p(95)<2000",),
        },
    )
    return {
        profile.name: profile
        for profile in (issue_constant_rate, issue_per_actor, gate_polling, gate_spike)
    }


def profile_from_dict(data: Mapping[str, Any], base: ScenarioProfile | None = None) -> ScenarioProfile:
    """Build a profile from decoded JSON, layering it over ``base`` when given."""
    known = {f.name for f in dataclasses.fields(ScenarioProfile)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"unknown profile field(s): {', '.join(sorted(unknown))}")

    values = dict(data)
    try:
        if "stages" in values:
            values["stages"] = tuple(
                Stage(duration_s=float(stage["duration_s"]), target=float(stage["target"]))
                for stage in values["stages"]
            )
        if values.get("verification") is not None:
            values["verification"] = VerificationMode(values["verification"])
        if "thresholds" in values:
            values["thresholds"] = {
                metric: (expressions,) if isinstance(expressions, str) else tuple(expressions)
                for metric, expressions in values["thresholds"].items()
            }
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid profile definition: {exc}") from exc

    if base is not None:
        return dataclasses.replace(base, **values)
    if "name" not in values or "kind" not in values:
        raise ConfigurationError("a standalone profile needs 'name' and 'kind'")
    return ScenarioProfile(**values)


def load_profile(path: str | Path, builtins: Mapping[str, ScenarioProfile] | None = None) -> ScenarioProfile:
    """Load a JSON profile; a ``base`` key names a built-in profile to extend."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"failed to read profile file {path}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"profile file {path} must contain a JSON object")

    base_name = data.pop("base", None)
    base = None
    if base_name is not None:
        profiles = builtins if builtins is not None else builtin_profiles()
        if base_name not in profiles:
            raise ConfigurationError(f"unknown base profile {base_name!r}")
        base = profiles[base_name]
    return profile_from_dict(data, base)
