import dataclasses
import json

import pytest

from couponload.config import (
    CONSTANT_RATE,
    GATE_POLLING,
    PER_ACTOR,
    ScenarioProfile,
    builtin_profiles,
    load_profile,
    profile_from_dict,
)
from couponload.errors import ConfigurationError
from couponload.pacing import Stage
from couponload.thresholds import parse_thresholds
from couponload.verifier import VerificationMode


def test_builtin_profiles_are_consistent():
    profiles = builtin_profiles()
    assert set(profiles) == {"issue-constant-rate", "issue-per-actor", "gate-polling", "gate-spike"}
    for profile in profiles.values():
        parse_thresholds(profile.thresholds)

    per_actor = profiles["issue-per-actor"]
    assert (per_actor.actor_count, per_actor.quantity) == (100, 30)
    assert per_actor.verification is VerificationMode.DENSE

    constant = profiles["issue-constant-rate"]
    assert constant.verification is VerificationMode.MONOTONIC
    assert constant.planned_duration_s() == 120
    assert constant.schedule() == [Stage(0, 15_000), Stage(120, 15_000)]

    assert profiles["gate-polling"].planned_duration_s() == 100


def test_load_profile_extends_a_builtin(tmp_path):
    path = tmp_path / "smoke.json"
    path.write_text(
        json.dumps(
            {
                "base": "issue-constant-rate",
                "name": "smoke",
                "actor_count": 50,
                "quantity": 5,
                "rate": 20,
                "duration_s": 2,
                "thresholds": {"success": "count==5"},
            }
        )
    )
    profile = load_profile(path)
    assert profile.name == "smoke"
    assert profile.kind == CONSTANT_RATE
    assert profile.actor_count == 50
    assert profile.verification is VerificationMode.MONOTONIC
    assert profile.thresholds == {"success": ("count==5",)}


def test_standalone_profile_with_stages(tmp_path):
    path = tmp_path / "gate.json"
    path.write_text(
        json.dumps(
            {
                "name": "tiny-gate",
                "kind": GATE_POLLING,
                "stages": [{"duration_s": 1, "target": 2}, {"duration_s": 1, "target": 0}],
                "poll_interval_s": 0.5,
            }
        )
    )
    profile = load_profile(path)
    assert profile.stages == (Stage(1, 2), Stage(1, 0))
    assert profile.verification is None


@pytest.mark.parametrize(
    "data",
    [
        {"name": "x", "kind": "soak"},
        {"name": "x", "kind": PER_ACTOR, "actor_count": 0, "quantity": 1},
        {"name": "x", "kind": PER_ACTOR, "actor_count": 10, "quantity": 0},
        {"name": "x", "kind": CONSTANT_RATE, "actor_count": 10, "quantity": 1},
        {"name": "x", "kind": GATE_POLLING},
        {"name": "x", "kind": GATE_POLLING, "stages": [{"duration_s": 1, "target": 2}], "verification": "dense"},
        {"name": "x", "kind": PER_ACTOR, "actor_count": 10, "quantity": 1, "verification": "strict"},
        {"name": "x", "kind": PER_ACTOR, "actor_count": 10, "quantity": 1, "warmup": 5},
        {"name": "x", "kind": GATE_POLLING, "stages": [{"target": 2}]},
        {"kind": PER_ACTOR, "actor_count": 10, "quantity": 1},
    ],
)
def test_invalid_profiles(data):
    with pytest.raises(ConfigurationError):
        profile_from_dict(data)


def test_unknown_base(tmp_path):
    path = tmp_path / "p.json"
    path.write_text(json.dumps({"base": "nope"}))
    with pytest.raises(ConfigurationError, match="unknown base"):
        load_profile(path)


def test_unreadable_profile(tmp_path):
    path = tmp_path / "p.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_profile(path)
    with pytest.raises(ConfigurationError):
        load_profile(tmp_path / "missing.json")


def test_profile_is_frozen():
    profile = ScenarioProfile(name="p", kind=PER_ACTOR, actor_count=1, quantity=1)
    with pytest.raises(AttributeError):
        profile.quantity = 2


@pytest.mark.parametrize(
    "thresholds",
    [
        {"success": "count=3"},
        {"success": "rate>0.5"},
        {"checks": "p(95)<10"},
        {"sucess": "count==3"},
    ],
)
def test_broken_thresholds_are_rejected_when_the_profile_loads(tmp_path, thresholds):
    path = tmp_path / "p.json"
    path.write_text(json.dumps({"base": "issue-per-actor", "name": "typo", "thresholds": thresholds}))
    with pytest.raises(ConfigurationError, match="typo"):
        load_profile(path)


def test_overriding_a_builtin_with_a_broken_threshold_fails():
    base = builtin_profiles()["gate-polling"]
    with pytest.raises(ConfigurationError):
        dataclasses.replace(base, thresholds={"waiting_time": ("rate>0.5",)})
