from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence

from .pacing import Stage, arrival_offsets, target_at, total_duration

LOGGER = logging.getLogger("couponload.load")

# Ticks started later than this after their due time count as late.
LATE_TOLERANCE_S = 0.05

# iteration(worker_index, iteration_index)
Iteration = Callable[[int, int], None]


@dataclass
class LoadStatistics:
    started: int
    completed: int
    failed: int
    dropped: int
    abandoned: int
    started_at: float
    finished_at: float
    late: int = 0

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def throughput_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.started / self.duration_s


class _IterationTracker:
    """Counts iterations in flight; executors wait on it to drain."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self.started = 0
        self.completed = 0
        self.failed = 0

    def begin(self) -> None:
        with self._cond:
            self.started += 1

    def end(self, failed: bool = False) -> None:
        with self._cond:
            self.completed += 1
            if failed:
                self.failed += 1
            self._cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self.started - self.completed

    def wait_idle(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self.started == self.completed, timeout=max(timeout, 0.0))

    def run(self, iteration: Iteration, worker: int, number: int) -> None:
        failed = False
        try:
            iteration(worker, number)
        except Exception:  # noqa: BLE001
            failed = True
            LOGGER.exception("iteration %d of worker %d raised", number, worker)
        finally:
            self.end(failed)

    def statistics(self, dropped: int, started_at: float, late: int = 0) -> LoadStatistics:
        with self._cond:
            return LoadStatistics(
                started=self.started,
                completed=self.completed,
                failed=self.failed,
                dropped=dropped,
                abandoned=self.started - self.completed,
                started_at=started_at,
                finished_at=time.time(),
                late=late,
            )


class ArrivalRateExecutor:
    """Open-model executor: iteration starts follow the rate profile, not completions.

    Each due tick is handed to a bounded worker pool. When every worker is
    busy the tick is dropped and counted rather than delayed, so slow
    responses show up as ``dropped`` instead of a silently lower arrival rate.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        max_workers: int,
        start_rate: float = 0.0,
        max_duration_s: float | None = None,
        graceful_stop_s: float = 30.0,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._stages = list(stages)
        self._start_rate = start_rate
        self._max_workers = max_workers
        self._max_duration_s = max_duration_s
        self._graceful_stop_s = graceful_stop_s
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def run(self, iteration: Iteration) -> LoadStatistics:
        tracker = _IterationTracker()
        slots = threading.BoundedSemaphore(self._max_workers)
        dropped = 0
        late = 0
        started_at = time.time()
        origin = self._clock()
        deadline = origin + _run_budget(self._stages, self._max_duration_s, self._graceful_stop_s)
        schedule_end = origin + total_duration(self._stages)

        def run_one(number: int) -> None:
            try:
                tracker.run(iteration, number, number)
            finally:
                slots.release()

        pool = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="couponload-arrival",
        )
        try:
            for number, offset in enumerate(arrival_offsets(self._stages, self._start_rate)):
                due = origin + offset
                if due >= deadline:
                    break
                delay = due - self._clock()
                if delay > 0 and self._stop_event.wait(delay):
                    break
                if self._stop_event.is_set():
                    break
                if self._clock() - due > LATE_TOLERANCE_S:
                    late += 1
                if not slots.acquire(blocking=False):
                    dropped += 1
                    continue
                tracker.begin()
                pool.submit(run_one, number)

            drain_until = min(deadline, max(schedule_end, self._clock()) + self._graceful_stop_s)
            if not tracker.wait_idle(drain_until - self._clock()):
                LOGGER.warning(
                    "abandoning %d in-flight iteration(s) at the run deadline",
                    tracker.in_flight,
                )
                self._stop_event.set()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if dropped:
            LOGGER.warning(
                "dropped %d iteration(s): all %d workers were busy",
                dropped,
                self._max_workers,
            )
        if late:
            LOGGER.warning(
                "%d iteration(s) started more than %.0fms behind schedule",
                late,
                LATE_TOLERANCE_S * 1000.0,
            )
        return tracker.statistics(dropped, started_at, late)


class RampingWorkersExecutor:
    """Closed-model executor: the number of looping workers follows the stages."""

    def __init__(
        self,
        stages: Sequence[Stage],
        start: int = 0,
        max_duration_s: float | None = None,
        graceful_stop_s: float = 30.0,
        think_time_s: float = 0.0,
        tick_s: float = 0.1,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stages = list(stages)
        self._start = start
        self._max_duration_s = max_duration_s
        self._graceful_stop_s = graceful_stop_s
        self._think_time_s = think_time_s
        self._tick_s = tick_s
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def run(self, iteration: Iteration) -> LoadStatistics:
        tracker = _IterationTracker()
        started_at = time.time()
        origin = self._clock()
        deadline = origin + _run_budget(self._stages, self._max_duration_s, self._graceful_stop_s)
        active: list[tuple[threading.Thread, threading.Event]] = []
        retired: list[threading.Thread] = []
        next_worker = 0

        def worker_loop(index: int, retire: threading.Event) -> None:
            number = 0
            while not retire.is_set() and not self._stop_event.is_set():
                tracker.begin()
                tracker.run(iteration, index, number)
                number += 1
                if self._think_time_s > 0 and self._stop_event.wait(self._think_time_s):
                    return

        while not self._stop_event.is_set():
            now = self._clock()
            if now >= deadline:
                break
            target = target_at(self._stages, now - origin, self._start)
            if target is None:
                break
            desired = int(round(target))
            while len(active) < desired:
                retire = threading.Event()
                thread = threading.Thread(
                    target=worker_loop,
                    args=(next_worker, retire),
                    name=f"couponload-worker-{next_worker}",
                    daemon=True,
                )
                next_worker += 1
                thread.start()
                active.append((thread, retire))
            while len(active) > desired:
                thread, retire = active.pop()
                retire.set()
                retired.append(thread)
            self._stop_event.wait(self._tick_s)

        for thread, retire in active:
            retire.set()
            retired.append(thread)
        LOGGER.info("ramp finished with %d worker(s) started", next_worker)

        drain_until = min(deadline, self._clock() + self._graceful_stop_s)
        _join_all(retired, drain_until, self._clock)
        if tracker.in_flight:
            LOGGER.warning(
                "abandoning %d in-flight iteration(s) at the run deadline",
                tracker.in_flight,
            )
            self._stop_event.set()
        return tracker.statistics(0, started_at)


class PerActorExecutor:
    """One worker per actor, each running a fixed number of iterations.

    Workers are released together from a barrier to model an all-at-once
    burst of distinct actors.
    """

    def __init__(
        self,
        workers: int,
        iterations: int = 1,
        max_duration_s: float = 60.0,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self._workers = workers
        self._iterations = iterations
        self._max_duration_s = max_duration_s
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def run(self, iteration: Iteration) -> LoadStatistics:
        tracker = _IterationTracker()
        barrier = threading.Barrier(self._workers + 1)

        def worker_loop(index: int) -> None:
            try:
                barrier.wait(timeout=self._max_duration_s)
            except threading.BrokenBarrierError:
                return
            for number in range(self._iterations):
                if self._stop_event.is_set():
                    return
                tracker.begin()
                tracker.run(iteration, index, number)

        threads = [
            threading.Thread(
                target=worker_loop,
                args=(index,),
                name=f"couponload-actor-{index}",
                daemon=True,
            )
            for index in range(self._workers)
        ]
        for thread in threads:
            thread.start()

        try:
            barrier.wait(timeout=self._max_duration_s)
        except threading.BrokenBarrierError:
            LOGGER.error("workers did not reach the start barrier within %.1fs", self._max_duration_s)
            self._stop_event.set()
        started_at = time.time()
        deadline = self._clock() + self._max_duration_s
        _join_all(threads, deadline, self._clock)
        if any(thread.is_alive() for thread in threads):
            LOGGER.warning(
                "max duration %.1fs reached with %d iteration(s) in flight",
                self._max_duration_s,
                tracker.in_flight,
            )
            self._stop_event.set()
        return tracker.statistics(0, started_at)


def _run_budget(stages: Sequence[Stage], max_duration_s: float | None, graceful_stop_s: float) -> float:
    if max_duration_s is not None:
        return max_duration_s
    return total_duration(stages) + graceful_stop_s


def _join_all(threads: Sequence[threading.Thread], deadline: float, clock: Callable[[], float]) -> None:
    for thread in threads:
        remaining = deadline - clock()
        if remaining <= 0:
            return
        thread.join(timeout=remaining)
