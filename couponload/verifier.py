from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from .errors import VerificationChannelError

LOGGER = logging.getLogger("couponload.verifier")


class VerificationMode(str, enum.Enum):
    MONOTONIC = "monotonic"
    DENSE = "dense"


@dataclass(frozen=True)
class CompletionRecord:
    request_sequence: int
    user_id: Any = None
    timestamp: Any = None


@dataclass
class VerificationResult:
    mode: VerificationMode
    passed: bool
    sequences: list[int]
    expected_quantity: int | None = None
    records: list[CompletionRecord] = field(default_factory=list)

    def describe(self) -> str:
        verdict = "holds" if self.passed else "VIOLATED"
        return f"{self.mode.value} ordering {verdict} over {len(self.sequences)} completion(s)"


def verification_logs_path(coupon_id: Any) -> str:
    return f"/api/coupons/{coupon_id}/verification-logs"


def is_monotonic(sequences: Sequence[int]) -> bool:
    return all(earlier < later for earlier, later in zip(sequences, sequences[1:]))


def is_dense(sequences: Sequence[int], quantity: int) -> bool:
    if len(sequences) != quantity:
        return False
    return all(value == index + 1 for index, value in enumerate(sequences))


def fetch_completion_log(client: httpx.Client, coupon_id: Any) -> list[CompletionRecord]:
    """Fetch the server's completion log for ``coupon_id`` in recorded order.

    Raises :class:`VerificationChannelError` when the log cannot be obtained,
    which means the oracle itself is broken rather than the allocator.
    """
    path = verification_logs_path(coupon_id)
    try:
        response = client.get(path)
    except httpx.HTTPError as exc:
        raise VerificationChannelError(f"GET {path} failed: {exc!r}") from exc
    if response.status_code != 200:
        raise VerificationChannelError(f"GET {path} returned status {response.status_code}")
    try:
        body = response.json()
    except ValueError as exc:
        raise VerificationChannelError(f"GET {path} returned a non-JSON body") from exc

    result = body.get("result") if isinstance(body, dict) else None
    if not isinstance(result, dict):
        raise VerificationChannelError("verification-logs response has no result")

    completions = result.get("completions") or []
    records = []
    for index, entry in enumerate(completions):
        sequence = entry.get("requestSequence") if isinstance(entry, dict) else None
        if not isinstance(sequence, int) or isinstance(sequence, bool):
            raise VerificationChannelError(
                f"completion #{index} has no integer requestSequence: {entry!r}"
            )
        records.append(
            CompletionRecord(
                request_sequence=sequence,
                user_id=entry.get("userId"),
                timestamp=entry.get("timestamp"),
            )
        )
    return records


def check_sequences(
    sequences: Sequence[int],
    mode: VerificationMode,
    quantity: int | None = None,
) -> bool:
    if mode is VerificationMode.DENSE:
        if quantity is None:
            raise ValueError("dense verification needs the coupon quantity")
        return is_dense(sequences, quantity)
    return is_monotonic(sequences)


def verify_completion_log(
    client: httpx.Client,
    coupon_id: Any,
    mode: VerificationMode,
    quantity: int | None = None,
) -> VerificationResult:
    records = fetch_completion_log(client, coupon_id)
    sequences = [record.request_sequence for record in records]
    passed = check_sequences(sequences, mode, quantity)
    result = VerificationResult(
        mode=mode,
        passed=passed,
        sequences=sequences,
        expected_quantity=quantity,
        records=records,
    )
    if passed:
        LOGGER.info("Completion log for coupon %s: %s", coupon_id, result.describe())
    else:
        LOGGER.error(
            "Completion log for coupon %s: %s; observed sequences %s",
            coupon_id,
            result.describe(),
            sequences,
        )
    return result
