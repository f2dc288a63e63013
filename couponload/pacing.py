"""
Temporal profiles for the workload executors.

A profile is a list of :class:`Stage` objects, each ramping linearly from the
previous target (or the initial ``start`` value) to its own target. The same
shape drives both the number of concurrent workers (closed model) and the
iteration arrival rate (open model).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Sequence

_EPSILON = 1e-9


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: float

    def __post_init__(self) -> None:
        if self.duration_s < 0:
            raise ValueError("Stage duration must be >= 0")
        if self.target < 0:
            raise ValueError("Stage target must be >= 0")


@dataclass(frozen=True)
class StagePosition:
    index: int
    elapsed_in_stage: float
    value: float


def total_duration(stages: Sequence[Stage]) -> float:
    return sum(stage.duration_s for stage in stages)


def constant_rate(rate: float, duration_s: float) -> list[Stage]:
    # The zero-length stage jumps straight to ``rate`` instead of ramping to it.
    return [Stage(duration_s=0.0, target=rate), Stage(duration_s=duration_s, target=rate)]


def locate(stages: Sequence[Stage], elapsed: float, start: float = 0.0) -> StagePosition | None:
    """Resolve ``elapsed`` seconds into (stage index, elapsed-in-stage, value).

    Returns None once the whole profile has played out.
    """
    if elapsed < 0:
        elapsed = 0.0
    previous = start
    offset = 0.0
    for index, stage in enumerate(stages):
        if elapsed < offset + stage.duration_s:
            within = elapsed - offset
            fraction = within / stage.duration_s
            value = previous + (stage.target - previous) * fraction
            return StagePosition(index=index, elapsed_in_stage=within, value=value)
        offset += stage.duration_s
        previous = stage.target
    return None


def target_at(stages: Sequence[Stage], elapsed: float, start: float = 0.0) -> float | None:
    position = locate(stages, elapsed, start)
    return None if position is None else position.value


def arrival_offsets(stages: Sequence[Stage], start_rate: float = 0.0) -> Iterator[float]:
    """Yield the start offset (seconds from run start) of every iteration.

    Iteration ``k`` is due when the integral of the rate curve reaches ``k``,
    so a flat stage of rate ``R`` and length ``D`` yields exactly ``R * D``
    offsets at ``0, 1/R, 2/R, ...``. Offsets are absolute, so a scheduler that
    sleeps until each one never accumulates drift.
    """
    emitted = 0
    carried = 0.0
    stage_start = 0.0
    rate_from = start_rate
    for stage in stages:
        rate_to = stage.target
        duration = stage.duration_s
        stage_total = (rate_from + rate_to) * duration / 2.0
        while emitted - carried < stage_total - _EPSILON:
            yield stage_start + _solve_offset(emitted - carried, rate_from, rate_to, duration)
            emitted += 1
        carried += stage_total
        stage_start += duration
        rate_from = rate_to


def _solve_offset(count: float, rate_from: float, rate_to: float, duration: float) -> float:
    # cumulative(t) = rate_from * t + accel * t**2 / 2
    accel = (rate_to - rate_from) / duration
    if math.isclose(accel, 0.0, abs_tol=1e-12):
        return count / rate_from
    discriminant = max(rate_from * rate_from + 2.0 * accel * count, 0.0)
    offset = (math.sqrt(discriminant) - rate_from) / accel
    return min(max(offset, 0.0), duration)
