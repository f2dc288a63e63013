from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .classifier import decode_body
from .errors import ProvisioningError

LOGGER = logging.getLogger("couponload.provisioner")

USERS_PATH = "/api/users"
CREATORS_PATH = "/api/creators"
COUPONS_PATH = "/api/coupons"

DEFAULT_CREATOR_NAME = "creator_1"
DEFAULT_COUPON_NAME = "load-test-coupon"


@dataclass(frozen=True)
class ProvisionedRun:
    actor_ids: list[Any]
    creator_id: Any
    coupon_id: Any
    quantity: int


class BootstrapProvisioner:
    """Creates the actors, the creator and the coupon a run allocates against.

    Any non-success response aborts provisioning with :class:`ProvisioningError`.
    """

    def __init__(
        self,
        client: httpx.Client,
        batch_size: int = 5000,
        creator_name: str = DEFAULT_CREATOR_NAME,
        coupon_name: str = DEFAULT_COUPON_NAME,
        timeout_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._client = client
        self._batch_size = batch_size
        self._creator_name = creator_name
        self._coupon_name = coupon_name
        self._timeout_s = timeout_s
        self._clock = clock
        self._deadline: float | None = None

    def provision(self, actor_count: int, quantity: int) -> ProvisionedRun:
        if self._timeout_s is not None:
            self._deadline = self._clock() + self._timeout_s
        actor_ids = self.create_actors(actor_count)
        creator_id = self.create_creator()
        coupon_id = self.create_coupon(creator_id, quantity)
        LOGGER.info(
            "Provisioned %d actor(s), creator %s and coupon %s (quantity=%d)",
            len(actor_ids),
            creator_id,
            coupon_id,
            quantity,
        )
        return ProvisionedRun(
            actor_ids=actor_ids,
            creator_id=creator_id,
            coupon_id=coupon_id,
            quantity=quantity,
        )

    def create_actors(self, count: int) -> list[Any]:
        actor_ids: list[Any] = []
        if count <= 0:
            return actor_ids
        workers = min(self._batch_size, count)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="couponload-setup") as pool:
            for batch_start in range(1, count + 1, self._batch_size):
                batch_end = min(batch_start + self._batch_size, count + 1)
                names = [f"user_{i}" for i in range(batch_start, batch_end)]
                # map() yields in submission order, which keeps the actor list stable.
                actor_ids.extend(pool.map(self._create_actor, names))
                LOGGER.info("Created actors %d-%d of %d", batch_start, batch_end - 1, count)
                self._check_deadline("create users")
        return actor_ids

    def create_creator(self) -> Any:
        return self._post(CREATORS_PATH, {"name": self._creator_name}, "creatorId", "create creator")

    def create_coupon(self, creator_id: Any, quantity: int) -> Any:
        payload = {
            "creatorId": creator_id,
            "quantity": quantity,
            "couponName": self._coupon_name,
        }
        return self._post(COUPONS_PATH, payload, "couponId", "create coupon")

    def _check_deadline(self, step: str) -> None:
        if self._deadline is not None and self._clock() > self._deadline:
            raise ProvisioningError(f"{step}: setup exceeded {self._timeout_s:.0f}s")

    def _create_actor(self, name: str) -> Any:
        return self._post(USERS_PATH, {"name": name}, "userId", f"create user {name}")

    def _post(self, path: str, payload: dict[str, Any], result_key: str, step: str) -> Any:
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"{step}: request failed: {exc!r}") from exc

        if response.status_code != 200:
            raise ProvisioningError(
                f"{step}: unexpected status {response.status_code}: {response.text[:200]!r}"
            )
        body = decode_body(response)
        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict) or result.get(result_key) is None:
            raise ProvisioningError(f"{step}: response has no result.{result_key}")
        return result[result_key]
