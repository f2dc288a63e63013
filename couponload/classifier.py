from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

import httpx

from .errors import ConfigurationError

LOGGER = logging.getLogger("couponload.classifier")


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    OUT_OF_STOCK = "out_of_stock"
    LOCK_TIMEOUT = "lock_timeout"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNCLASSIFIED = "unclassified"


# Kinds a vocabulary entry may map to. Success, transport failure and the
# catch-all are decided structurally, not by message text.
VOCABULARY_KINDS: tuple[OutcomeKind, ...] = (
    OutcomeKind.DUPLICATE,
    OutcomeKind.OUT_OF_STOCK,
    OutcomeKind.LOCK_TIMEOUT,
)


@dataclass(frozen=True)
class VocabularyEntry:
    """One known business error of the issuer, keyed by status and message or code."""

    kind: OutcomeKind
    status: int
    message: str | None = None
    code: int | None = None

    def matches(self, status: int, message: str, code: int | None) -> bool:
        if status != self.status:
            return False
        if self.code is not None and code is not None and code == self.code:
            return True
        return self.message is not None and message == self.message


class ErrorVocabulary:
    """Ordered table of the issuer's error taxonomy; first matching entry wins."""

    def __init__(self, entries: Iterable[VocabularyEntry]) -> None:
        self._entries = list(entries)

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, status: int, message: str, code: int | None = None) -> OutcomeKind | None:
        for entry in self._entries:
            if entry.matches(status, message, code):
                return entry.kind
        return None

    @classmethod
    def default(cls) -> "ErrorVocabulary":
        return cls(DEFAULT_ENTRIES)

    @classmethod
    def from_records(cls, records: Sequence[dict[str, Any]]) -> "ErrorVocabulary":
        entries = []
        for index, record in enumerate(records):
            try:
                kind = OutcomeKind(record["kind"])
                status = int(record["status"])
            except (KeyError, ValueError, TypeError) as exc:
                raise ConfigurationError(f"invalid vocabulary entry #{index}: {record!r}") from exc
            if kind not in VOCABULARY_KINDS:
                raise ConfigurationError(
                    f"vocabulary entry #{index} maps to {kind.value!r}, "
                    f"expected one of {[k.value for k in VOCABULARY_KINDS]}"
                )
            message = record.get("message")
            code = record.get("code")
            if message is None and code is None:
                raise ConfigurationError(f"vocabulary entry #{index} needs a message or a code")
            entries.append(
                VocabularyEntry(
                    kind=kind,
                    status=status,
                    message=message,
                    code=int(code) if code is not None else None,
                )
            )
        return cls(entries)

    @classmethod
    def from_file(cls, path: Path) -> "ErrorVocabulary":
        try:
            records = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"failed to read vocabulary file {path}") from exc
        if isinstance(records, dict):
            records = records.get("entries", [])
        if not isinstance(records, list):
            raise ConfigurationError(f"vocabulary file {path} must hold a list of entries")
        return cls.from_records(records)


DEFAULT_ENTRIES: tuple[VocabularyEntry, ...] = (
    VocabularyEntry(OutcomeKind.DUPLICATE, 400, "이미 발급받은 쿠폰입니다.", 1100),
    VocabularyEntry(OutcomeKind.OUT_OF_STOCK, 400, "쿠폰 재고가 부족합니다.", 1001),
    VocabularyEntry(OutcomeKind.LOCK_TIMEOUT, 500, "쿠폰 LOCK 획득 대기 시간이 초과되었습니다."),
)


@dataclass(frozen=True)
class Classification:
    kind: OutcomeKind
    status: int | None
    message: str


def classify(
    status: int | None,
    body: Any,
    vocabulary: ErrorVocabulary,
) -> Classification:
    """Bucket one allocation result.

    ``status`` is None when no response was received at all. ``body`` is the
    decoded JSON payload; anything that is not an object counts as empty.
    """
    if status is None:
        return Classification(OutcomeKind.NETWORK_ERROR, None, "")

    payload = body if isinstance(body, dict) else {}
    message = payload.get("message")
    message = message if isinstance(message, str) else ""
    code = payload.get("code")
    code = code if isinstance(code, int) and not isinstance(code, bool) else None

    kind = vocabulary.lookup(status, message, code)
    if kind is None:
        if status >= 500:
            kind = OutcomeKind.SERVER_ERROR
        elif status == 200:
            kind = OutcomeKind.SUCCESS
        else:
            kind = OutcomeKind.UNCLASSIFIED
            LOGGER.warning("unclassified response status=%s message=%r", status, message)
    return Classification(kind, status, message)


def decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def classify_response(
    response: httpx.Response | None,
    vocabulary: ErrorVocabulary,
) -> Classification:
    if response is None:
        return classify(None, None, vocabulary)
    return classify(response.status_code, decode_body(response), vocabulary)
