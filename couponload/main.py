from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

from .classifier import ErrorVocabulary
from .config import CONSTANT_RATE, GATE_POLLING, ScenarioProfile, builtin_profiles, load_profile
from .errors import ConfigurationError, CouponLoadError
from .runner import DEFAULT_BASE_URL, DEFAULT_GATE_URL, RunReport, RunSettings, run_scenario
from .verifier import VerificationMode

LOGGER = logging.getLogger("couponload")

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"invalid {name} value {raw!r}; defaulting to {default}", file=sys.stderr)
        return default


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Coupon issuance and gate load harness")
    parser.add_argument(
        "--profile",
        default=os.environ.get("COUPONLOAD_PROFILE", "issue-per-actor"),
        help="Built-in scenario name (see --list-profiles)",
    )
    parser.add_argument(
        "--profile-path",
        default=os.environ.get("COUPONLOAD_PROFILE_PATH"),
        help="JSON file describing a scenario; a 'base' key extends a built-in one",
    )
    parser.add_argument(
        "--list-profiles",
        action="store_true",
        help="Print the built-in scenarios and exit",
    )
    parser.add_argument(
        "--base-url", default=os.environ.get("COUPONLOAD_BASE_URL", DEFAULT_BASE_URL)
    )
    parser.add_argument(
        "--gate-url", default=os.environ.get("COUPONLOAD_GATE_URL", DEFAULT_GATE_URL)
    )
    parser.add_argument(
        "--vocabulary-path",
        default=os.environ.get("COUPONLOAD_VOCABULARY_PATH"),
        help="JSON table of the issuer's error messages/codes",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=_env_float("COUPONLOAD_REQUEST_TIMEOUT", 30.0),
        help="Per-request timeout in seconds",
    )
    parser.add_argument("--actors", type=int, help="Number of actors to provision")
    parser.add_argument("--quantity", type=int, help="Coupon quantity")
    parser.add_argument("--rate", type=float, help="Target iterations per second")
    parser.add_argument("--duration", type=float, help="Seconds to sustain the rate")
    parser.add_argument("--max-workers", type=int, help="Bound on concurrent iterations")
    parser.add_argument("--batch-size", type=int, help="Actors created per setup batch")
    parser.add_argument("--poll-interval", type=float, help="Seconds between gate rank polls")
    parser.add_argument("--max-attempts", type=int, help="Poll budget per actor")
    parser.add_argument("--max-duration", type=float, help="Overall run deadline in seconds")
    parser.add_argument(
        "--verification",
        choices=[mode.value for mode in VerificationMode] + ["none"],
        help="Completion log ordering check",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("COUPONLOAD_OUTPUT_DIR"),
        help="Directory to store run artefacts (CSV files and summary manifest)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the resolved scenario without executing it",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("COUPONLOAD_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    parser.add_argument(
        "--log-path",
        default=os.environ.get("COUPONLOAD_LOG_PATH"),
        help="Optional file that receives a copy of the log",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def configure_file_logging(log_path: Path) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.getLogger("couponload").addHandler(handler)
    return handler


def resolve_profile(args: argparse.Namespace) -> ScenarioProfile:
    profiles = builtin_profiles()
    if args.profile_path:
        profile = load_profile(args.profile_path, profiles)
    else:
        if args.profile not in profiles:
            raise ConfigurationError(
                f"unknown profile {args.profile!r}; choose from {', '.join(sorted(profiles))}"
            )
        profile = profiles[args.profile]

    overrides = {
        "actor_count": args.actors,
        "quantity": args.quantity,
        "rate": args.rate,
        "duration_s": args.duration,
        "max_workers": args.max_workers,
        "batch_size": args.batch_size,
        "poll_interval_s": args.poll_interval,
        "max_attempts": args.max_attempts,
        "max_duration_s": args.max_duration,
    }
    changes = {key: value for key, value in overrides.items() if value is not None}
    if args.verification is not None:
        changes["verification"] = (
            None if args.verification == "none" else VerificationMode(args.verification)
        )
    if changes:
        profile = dataclasses.replace(profile, **changes)
    return profile


def write_artefacts(report: RunReport, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    name = report.profile.name

    requests = report.collector.build_dataframe()
    if not requests.empty:
        requests_path = output_dir / f"{name}__requests.csv"
        requests.to_csv(requests_path, index=False)
        LOGGER.info("Saved %d request record(s) to %s", len(requests), requests_path)

    for trend_name in report.collector.trend_names():
        trend_path = output_dir / f"{name}__{trend_name}.csv"
        report.collector.trend(trend_name).to_csv(trend_path, index=False, header=True)
        LOGGER.info("Saved trend %s to %s", trend_name, trend_path)

    manifest_path = output_dir / f"{name}__summary.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(report.summary(), f, indent=2, default=str)
    LOGGER.info("Run summary written to %s", manifest_path)
    return manifest_path


def print_report(report: RunReport) -> None:
    stats = report.statistics
    print(f"Scenario: {report.profile.name} ({report.profile.kind})")
    print(
        f"  iterations: started={stats.started} completed={stats.completed} "
        f"dropped={stats.dropped} late={stats.late} abandoned={stats.abandoned} "
        f"({stats.throughput_per_second:.2f}/s over {stats.duration_s:.2f}s)"
    )
    if report.profile.is_issuer_run:
        print("  outcomes:")
        for kind, count in report.collector.outcome_counts().items():
            print(f"    {kind}: {count}")
    for name in report.collector.check_names():
        passes, total = report.collector.check_tally(name)
        print(f"  check {name}: {passes}/{total}")
    for result in report.thresholds:
        print(f"  threshold {result.describe()}")
    if report.verification is not None:
        print(f"  verification: {report.verification.describe()}")
        print(f"  completion sequences: {report.verification.sequences}")
    status = "PASSED" if report.passed else "FAILED"
    print(f"\nRun status: {status}", file=sys.stderr)


def _print_profiles() -> None:
    for profile in builtin_profiles().values():
        print(f"{profile.name}: {profile.kind} - {profile.description}")


def _print_plan(profile: ScenarioProfile) -> None:
    print(f"Scenario: {profile.name} ({profile.kind})")
    if profile.is_issuer_run:
        print(f"  actors={profile.actor_count} quantity={profile.quantity} batch={profile.batch_size}")
    if profile.kind == CONSTANT_RATE and not profile.stages:
        print(f"  rate={profile.rate}/s duration={profile.duration_s}s max_workers={profile.max_workers}")
    for stage in profile.schedule():
        print(f"  stage: {stage.duration_s}s -> {stage.target}")
    if profile.kind == GATE_POLLING:
        print(f"  poll every {profile.poll_interval_s}s, at most {profile.max_attempts} attempt(s)")
    verification = profile.verification.value if profile.verification else "none"
    print(f"  verification={verification} deadline={profile.max_duration_s or 'auto'}")
    for metric, expressions in profile.thresholds.items():
        for expression in expressions:
            print(f"  threshold: {metric} {expression}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    if args.log_path:
        configure_file_logging(Path(args.log_path))

    if args.list_profiles:
        _print_profiles()
        return EXIT_PASSED

    try:
        profile = resolve_profile(args)
        vocabulary = (
            ErrorVocabulary.from_file(Path(args.vocabulary_path))
            if args.vocabulary_path
            else ErrorVocabulary.default()
        )
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_ABORTED

    if args.dry_run:
        _print_plan(profile)
        return EXIT_PASSED

    settings = RunSettings(
        base_url=args.base_url,
        gate_url=args.gate_url,
        request_timeout_s=args.request_timeout,
        vocabulary=vocabulary,
    )
    try:
        report = run_scenario(profile, settings)
    except CouponLoadError:
        LOGGER.exception("run %s aborted", profile.name)
        return EXIT_ABORTED

    print_report(report)
    if args.output_dir:
        write_artefacts(report, Path(args.output_dir))
    return EXIT_PASSED if report.passed else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
