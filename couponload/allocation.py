from __future__ import annotations

import logging
import random
import time
from typing import Any, Sequence

import httpx

from .classifier import Classification, ErrorVocabulary, classify_response
from .collector import OutcomeCollector

LOGGER = logging.getLogger("couponload.allocation")

REQUEST_DURATION = "request_duration"


def allocate_path(coupon_id: Any) -> str:
    return f"/api/coupons/{coupon_id}"


class AllocationCall:
    """Issues one allocation request and records its classified outcome."""

    def __init__(
        self,
        client: httpx.Client,
        coupon_id: Any,
        collector: OutcomeCollector,
        vocabulary: ErrorVocabulary,
    ) -> None:
        self._client = client
        self._path = allocate_path(coupon_id)
        self._collector = collector
        self._vocabulary = vocabulary

    def __call__(self, actor_id: Any) -> Classification:
        started_at = time.time()
        t0 = time.perf_counter()
        response: httpx.Response | None
        try:
            response = self._client.post(self._path, json={"userId": actor_id})
        except httpx.HTTPError as exc:
            LOGGER.debug("allocation for actor %s failed in transport: %r", actor_id, exc)
            response = None
        latency_s = time.perf_counter() - t0

        classification = classify_response(response, self._vocabulary)
        self._collector.record_outcome(actor_id, classification, latency_s, started_at)
        if response is not None:
            self._collector.record_trend(REQUEST_DURATION, latency_s * 1000.0)
        return classification


class RandomActorAllocation:
    """Iteration for rate profiles: each tick picks any provisioned actor."""

    def __init__(self, call: AllocationCall, actor_ids: Sequence[Any], rng: random.Random | None = None) -> None:
        if not actor_ids:
            raise ValueError("at least one actor is required")
        self._call = call
        self._actor_ids = list(actor_ids)
        self._rng = rng or random.Random()

    def __call__(self, worker: int, number: int) -> None:
        self._call(self._rng.choice(self._actor_ids))


class FixedActorAllocation:
    """Iteration for the per-actor profile: worker ``i`` always uses actor ``i``."""

    def __init__(self, call: AllocationCall, actor_ids: Sequence[Any]) -> None:
        self._call = call
        self._actor_ids = list(actor_ids)

    def __call__(self, worker: int, number: int) -> None:
        self._call(self._actor_ids[worker])
