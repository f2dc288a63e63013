"""
Waiting-room gate workloads.

``GatePoller`` enqueues an actor once and then polls its rank at a fixed
cadence until the gate admits it (``PROCESSING``) or the attempt budget runs
out. ``GateSpike`` only enqueues, modelling a burst of arrivals at opening
time.
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .classifier import decode_body
from .collector import OutcomeCollector

LOGGER = logging.getLogger("couponload.gate")

WAITING_TIME = "waiting_time"
ENQUEUE_DURATION = "enqueue_duration"

CHECK_ENQUEUED = "enqueued"
CHECK_ADMITTED = "entered_processing"

POLL_ERRORS = "poll_errors"

ENQUEUE_TOKENS = ("ENQUEUED", "ALREADY_ENQUEUED")

MAX_ACTOR_ID = 1_000_000


class TicketState(str, enum.Enum):
    NOT_ENQUEUED = "NOT_ENQUEUED"
    ENQUEUED = "ENQUEUED"
    WAITING = "WAITING"
    PROCESSING = "PROCESSING"
    ABANDONED = "ABANDONED"
    ENQUEUE_FAILED = "ENQUEUE_FAILED"


@dataclass
class WaitTicket:
    actor_id: Any
    enqueued_at: float | None = None
    last_rank: int | None = None
    state: TicketState = TicketState.NOT_ENQUEUED
    attempts: int = 0
    wait_s: float | None = None


def random_actor_id() -> int:
    return random.randint(1, MAX_ACTOR_ID)


def enqueue_path(event_id: Any) -> str:
    return f"/gate/events/{event_id}/enqueue"


def rank_path(event_id: Any) -> str:
    return f"/gate/events/{event_id}/rank"


def is_enqueued(response: httpx.Response | None) -> bool:
    if response is None or response.status_code != 200:
        return False
    body = decode_body(response)
    if isinstance(body, dict) and body:
        return body.get("status") in ENQUEUE_TOKENS
    # Plain-text acknowledgement.
    return "ENQUEUED" in response.text


class _GateWorkload:
    def __init__(
        self,
        client: httpx.Client,
        event_id: Any,
        collector: OutcomeCollector,
        actor_source: Callable[[], Any] = random_actor_id,
    ) -> None:
        self._client = client
        self._event_id = event_id
        self._collector = collector
        self._actor_source = actor_source

    def __call__(self, worker: int, number: int) -> None:
        self.run_actor(self._actor_source())

    def run_actor(self, actor_id: Any) -> WaitTicket:
        raise NotImplementedError

    def _enqueue(self, ticket: WaitTicket) -> bool:
        t0 = time.perf_counter()
        try:
            response = self._client.post(
                enqueue_path(self._event_id),
                params={"userId": str(ticket.actor_id)},
            )
        except httpx.HTTPError as exc:
            LOGGER.debug("enqueue for actor %s failed in transport: %r", ticket.actor_id, exc)
            response = None
        else:
            self._collector.record_trend(ENQUEUE_DURATION, (time.perf_counter() - t0) * 1000.0)

        if not self._collector.record_check(CHECK_ENQUEUED, is_enqueued(response)):
            ticket.state = TicketState.ENQUEUE_FAILED
            return False
        ticket.state = TicketState.ENQUEUED
        return True


class GatePoller(_GateWorkload):
    def __init__(
        self,
        client: httpx.Client,
        event_id: Any,
        collector: OutcomeCollector,
        poll_interval_s: float = 3.0,
        max_attempts: int = 40,
        stop_event: threading.Event | None = None,
        actor_source: Callable[[], Any] = random_actor_id,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(client, event_id, collector, actor_source)
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._poll_interval_s = poll_interval_s
        self._max_attempts = max_attempts
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

    def run_actor(self, actor_id: Any) -> WaitTicket:
        ticket = WaitTicket(actor_id=actor_id)
        ticket.enqueued_at = self._clock()
        if not self._enqueue(ticket):
            return ticket

        while ticket.attempts < self._max_attempts:
            if self._stop_event.wait(self._poll_interval_s):
                # Run deadline: leave the ticket as last observed.
                return ticket
            ticket.attempts += 1
            status, rank = self._poll(ticket.actor_id)
            if status == TicketState.PROCESSING.value:
                ticket.state = TicketState.PROCESSING
                ticket.wait_s = self._clock() - ticket.enqueued_at
                self._collector.record_trend(WAITING_TIME, ticket.wait_s * 1000.0)
                break
            if status == TicketState.WAITING.value:
                ticket.state = TicketState.WAITING
                ticket.last_rank = rank
        else:
            ticket.state = TicketState.ABANDONED
            LOGGER.debug(
                "actor %s abandoned after %d poll(s), last rank %s",
                ticket.actor_id,
                ticket.attempts,
                ticket.last_rank,
            )

        self._collector.record_check(CHECK_ADMITTED, ticket.state is TicketState.PROCESSING)
        return ticket

    def _poll(self, actor_id: Any) -> tuple[str | None, int | None]:
        try:
            response = self._client.get(
                rank_path(self._event_id),
                params={"userId": str(actor_id)},
            )
        except httpx.HTTPError as exc:
            LOGGER.debug("rank poll for actor %s failed in transport: %r", actor_id, exc)
            self._collector.increment(POLL_ERRORS)
            return None, None
        if response.status_code != 200:
            self._collector.increment(POLL_ERRORS)
            return None, None

        body = decode_body(response)
        if not isinstance(body, dict):
            return None, None
        rank = body.get("rank")
        return body.get("status"), rank if isinstance(rank, int) else None


class GateSpike(_GateWorkload):
    def run_actor(self, actor_id: Any) -> WaitTicket:
        ticket = WaitTicket(actor_id=actor_id)
        ticket.enqueued_at = time.monotonic()
        self._enqueue(ticket)
        return ticket
