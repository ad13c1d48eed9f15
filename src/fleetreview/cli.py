from __future__ import annotations

import argparse
from dataclasses import replace
import json
from pathlib import Path
import sys

from fleetreview.checkpoint import (
    ReviewStateStore,
    checkpoint_to_json_dict,
    state_to_json_dict,
)
from fleetreview.config import (
    ConfigError,
    ReviewConfig,
    default_config,
    default_state_dir,
    load_config,
    parse_repo_spec,
    resolve_target_parallelism,
    validate_config,
)
from fleetreview.driver import TmuxSessionDriver
from fleetreview.github_gateway import GitHubGateway
from fleetreview.governor import Governor, GovernorRefresher
from fleetreview.ledger import ActionLedger, PlanValidationError, load_plan
from fleetreview.locking import RunLockError
from fleetreview.observability import configure_logging
from fleetreview.orchestrator import ReviewOrchestrator
from fleetreview.session_monitor import MonitorTuning, SessionMonitor


EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetreview")
    subparsers = parser.add_subparsers(dest="command", required=True)

    review_parser = subparsers.add_parser(
        "review", help="Run review sessions across the configured repositories"
    )
    review_parser.add_argument("--config", type=Path, default=None)
    review_parser.add_argument(
        "--repo",
        action="append",
        default=[],
        metavar="OWNER/NAME=PATH",
        help="Review this repo in the given worktree (repeatable; replaces [repos])",
    )
    review_parser.add_argument("--mode", choices=("plan", "apply"), default=None)
    review_parser.add_argument(
        "--resume", action="store_true", help="Continue from the saved checkpoint"
    )
    _add_verbose_flag(review_parser)

    apply_parser = subparsers.add_parser(
        "apply-plan", help="Apply the gh actions of a review plan through the ledger"
    )
    apply_parser.add_argument("--repo", required=True, metavar="OWNER/NAME")
    apply_parser.add_argument("--plan", type=Path, required=True)
    _add_state_dir_flags(apply_parser)
    _add_verbose_flag(apply_parser)

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Inspect the resume checkpoint")
    checkpoint_parser.add_argument("checkpoint_command", choices=("show", "clear"))
    _add_state_dir_flags(checkpoint_parser)

    state_parser = subparsers.add_parser("state", help="Inspect the review state document")
    state_parser.add_argument("state_command", choices=("show",))
    _add_state_dir_flags(state_parser)

    governor_parser = subparsers.add_parser(
        "governor", help="Refresh the governor once and print its status"
    )
    governor_parser.add_argument("governor_command", choices=("status",))
    _add_state_dir_flags(governor_parser)
    _add_verbose_flag(governor_parser)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(getattr(args, "verbose", None))

    try:
        if args.command == "review":
            exit_code = _cmd_review(args)
        elif args.command == "apply-plan":
            exit_code = _cmd_apply_plan(args)
        elif args.command == "checkpoint":
            exit_code = _cmd_checkpoint(args)
        elif args.command == "state":
            exit_code = _cmd_state(args)
        elif args.command == "governor":
            exit_code = _cmd_governor(args)
        else:
            raise RuntimeError(f"Unknown command: {args.command}")
    except (ConfigError, PlanValidationError, RunLockError) as exc:
        raise SystemExit(f"fleetreview: {exc}") from exc

    if exit_code != 0:
        raise SystemExit(exit_code)


def _cmd_review(args: argparse.Namespace) -> int:
    config = _review_config(args)
    configure_logging(getattr(args, "verbose", None), state_dir=config.state_dir)
    if not config.repos:
        raise ConfigError("No repositories to review: pass --repo or add a [repos] table")

    store = ReviewStateStore(config.review_dir, lock_timeout_seconds=config.lock_timeout_seconds)
    ledger = ActionLedger(config.review_dir, lock_timeout_seconds=config.lock_timeout_seconds)
    github = GitHubGateway()
    governor = Governor(
        target_parallelism=config.target_parallelism,
        rate_limits=github,
        signal_log_dir=config.pipes_dir,
    )
    driver = TmuxSessionDriver(config.pipes_dir)
    monitor = SessionMonitor(
        driver,
        tuning=MonitorTuning(
            quiet_period_seconds=config.quiet_period_seconds,
            hysteresis_observations=config.hysteresis_observations,
            stalled_observations=config.stalled_observations,
            compact_attempts=config.compact_attempts,
        ),
    )
    orchestrator = ReviewOrchestrator(
        config,
        store=store,
        ledger=ledger,
        governor=governor,
        driver=driver,
        monitor=monitor,
        github=github,
    )

    governor.refresh()
    try:
        with GovernorRefresher(governor, interval_seconds=config.governor_refresh_seconds):
            summary = orchestrator.run(resume=bool(args.resume))
    except KeyboardInterrupt:
        print("Interrupted; progress saved to the review checkpoint.", file=sys.stderr)
        return EXIT_INTERRUPTED

    payload = {
        "run_id": summary.run_id,
        "status": summary.status,
        "results": [
            {
                "repo": result.repo,
                "outcome": result.outcome,
                "duration_seconds": result.duration_seconds,
                "actions_failed": result.actions_failed,
            }
            for result in summary.results
        ],
        "skipped_repos": list(summary.skipped_repos),
        "pending_repos": list(summary.pending_repos),
    }
    print(json.dumps(payload, indent=2))
    return 0 if summary.ok else 1


def _cmd_apply_plan(args: argparse.Namespace) -> int:
    state_dir = _resolve_state_dir(args)
    configure_logging(getattr(args, "verbose", None), state_dir=state_dir)
    repo = parse_repo_spec(f"{args.repo}=.").repo
    plan = load_plan(args.plan)
    if plan.repo != repo:
        raise PlanValidationError(f"Plan repo {plan.repo!r} does not match --repo {repo!r}")
    ledger = ActionLedger(state_dir / "review")
    summary = ledger.execute_all(repo, plan.gh_actions, GitHubGateway(repo_full_name=repo))
    print(
        json.dumps(
            {
                "repo": repo,
                "executed": summary.executed,
                "skipped": summary.skipped,
                "failed": summary.failed,
                "unrecorded": summary.unrecorded,
            },
            indent=2,
        )
    )
    return 0 if summary.ok else 1


def _cmd_checkpoint(args: argparse.Namespace) -> int:
    store = ReviewStateStore(_resolve_state_dir(args) / "review")
    if args.checkpoint_command == "clear":
        store.clear_checkpoint()
        print("Checkpoint cleared.")
        return 0
    checkpoint = store.load_checkpoint()
    if checkpoint is None:
        print("No checkpoint.")
        return 0
    print(json.dumps(checkpoint_to_json_dict(checkpoint), indent=2))
    return 0


def _cmd_state(args: argparse.Namespace) -> int:
    store = ReviewStateStore(_resolve_state_dir(args) / "review")
    print(json.dumps(state_to_json_dict(store.load()), indent=2, sort_keys=True))
    return 0


def _cmd_governor(args: argparse.Namespace) -> int:
    state_dir = _resolve_state_dir(args)
    governor = Governor(
        target_parallelism=resolve_target_parallelism(),
        rate_limits=GitHubGateway(),
        signal_log_dir=state_dir / "pipes",
    )
    governor.refresh()
    print(json.dumps(governor.status().to_json_dict(), indent=2))
    return 0


def _review_config(args: argparse.Namespace) -> ReviewConfig:
    config = load_config(args.config) if args.config is not None else default_config()
    if args.repo:
        config = replace(config, repos=tuple(parse_repo_spec(raw) for raw in args.repo))
    if args.mode is not None:
        config = replace(config, mode=args.mode)
    validate_config(config)
    return config


def _resolve_state_dir(args: argparse.Namespace) -> Path:
    if getattr(args, "state_dir", None) is not None:
        return args.state_dir
    if getattr(args, "config", None) is not None:
        return load_config(args.config).state_dir
    return default_state_dir()


def _add_state_dir_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state-dir", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None)


def _add_verbose_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Log to stderr; 'low' keeps only milestones and warnings",
    )
