"""Shared fixtures: in-process fakes of the issuer and the gate behind httpx.MockTransport."""
from __future__ import annotations

import collections
import itertools
import json
import threading

import httpx
import pytest

from couponload.classifier import DEFAULT_ENTRIES, OutcomeKind
from couponload.collector import OutcomeCollector

DUPLICATE_MESSAGE = next(e.message for e in DEFAULT_ENTRIES if e.kind is OutcomeKind.DUPLICATE)
OUT_OF_STOCK_MESSAGE = next(e.message for e in DEFAULT_ENTRIES if e.kind is OutcomeKind.OUT_OF_STOCK)
LOCK_TIMEOUT_MESSAGE = next(e.message for e in DEFAULT_ENTRIES if e.kind is OutcomeKind.LOCK_TIMEOUT)


def ok(result=None):
    return httpx.Response(200, json={"code": 200, "status": "OK", "message": "OK", "result": result})


def error(status, message, code=None):
    return httpx.Response(
        status,
        json={"code": code if code is not None else status, "message": message, "result": None},
    )


class FakeIssuer:
    """Single-lock FCFS issuer: request sequences are assigned and consumed in one critical section."""

    def __init__(self):
        self.lock = threading.Lock()
        self.user_ids = itertools.count(1)
        self.creator_ids = itertools.count(1)
        self.coupon_ids = itertools.count(1)
        self.users = {}
        self.coupons = {}
        self.holders = collections.defaultdict(set)
        self.sequences = collections.Counter()
        self.completions = collections.defaultdict(list)
        self.requests = collections.Counter()
        self.fail_user_creation_at = None
        self.completion_override = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        with self.lock:
            self.requests[(request.method, path)] += 1
        if request.method == "POST" and path == "/api/users":
            return self._create_user(json.loads(request.content))
        if request.method == "POST" and path == "/api/creators":
            return ok({"creatorId": next(self.creator_ids)})
        if request.method == "POST" and path == "/api/coupons":
            body = json.loads(request.content)
            coupon_id = next(self.coupon_ids)
            with self.lock:
                self.coupons[coupon_id] = body["quantity"]
            return ok({"couponId": coupon_id})
        if path.endswith("/verification-logs"):
            coupon_id = int(path.split("/")[3])
            return self._logs(coupon_id)
        if request.method == "POST" and path.startswith("/api/coupons/"):
            coupon_id = int(path.rsplit("/", 1)[1])
            return self._issue(coupon_id, json.loads(request.content)["userId"])
        return httpx.Response(404, json={"message": "not found"})

    def _create_user(self, body):
        with self.lock:
            user_id = next(self.user_ids)
            if self.fail_user_creation_at == user_id:
                return error(500, "boom")
            self.users[user_id] = body["name"]
        return ok({"userId": user_id})

    def _issue(self, coupon_id, user_id):
        with self.lock:
            self.sequences[coupon_id] += 1
            sequence = self.sequences[coupon_id]
            if user_id in self.holders[coupon_id]:
                return error(400, DUPLICATE_MESSAGE, 1100)
            if len(self.holders[coupon_id]) >= self.coupons[coupon_id]:
                return error(400, OUT_OF_STOCK_MESSAGE, 1001)
            self.holders[coupon_id].add(user_id)
            self.completions[coupon_id].append(
                {"userId": user_id, "timestamp": "2024-01-01T00:00:00", "requestSequence": sequence}
            )
        return ok(None)

    def _logs(self, coupon_id):
        with self.lock:
            completions = list(self.completions[coupon_id])
        if self.completion_override is not None:
            completions = [{"requestSequence": s} for s in self.completion_override]
        return ok({"completions": completions})


class FakeGate:
    """Admits every user after ``admit_after`` rank polls."""

    def __init__(self, admit_after=2, enqueue_status=200):
        self.lock = threading.Lock()
        self.admit_after = admit_after
        self.enqueue_status = enqueue_status
        self.queue = []
        self.polls = collections.Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        user_id = request.url.params["userId"]
        if request.url.path.endswith("/enqueue"):
            if self.enqueue_status != 200:
                return httpx.Response(self.enqueue_status, json={"message": "gate closed"})
            with self.lock:
                if user_id in self.queue:
                    return httpx.Response(200, json={"status": "ALREADY_ENQUEUED", "rank": 1})
                self.queue.append(user_id)
                rank = len(self.queue)
            return httpx.Response(200, json={"status": "ENQUEUED", "rank": rank})
        if request.url.path.endswith("/rank"):
            with self.lock:
                self.polls[user_id] += 1
                polls = self.polls[user_id]
            if self.admit_after is not None and polls >= self.admit_after:
                return httpx.Response(200, json={"status": "PROCESSING", "rank": None})
            return httpx.Response(200, json={"status": "WAITING", "rank": 5})
        return httpx.Response(404)


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def issuer_client(issuer):
    with httpx.Client(base_url="http://issuer.test", transport=httpx.MockTransport(issuer.handler)) as client:
        yield client


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def gate_client(gate):
    with httpx.Client(base_url="http://gate.test", transport=httpx.MockTransport(gate.handler)) as client:
        yield client


@pytest.fixture
def collector():
    return OutcomeCollector()
