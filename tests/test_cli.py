from __future__ import annotations

from collections.abc import Mapping
import json
from pathlib import Path

import pytest

from fleetreview import cli
from fleetreview.checkpoint import ReviewStateStore
from fleetreview.config import ReviewConfig
from fleetreview.models import ActionResult, RateLimitSnapshot, RepoRunResult
from fleetreview.orchestrator import ReviewRunSummary


class FakeGateway:
    remaining = 4000
    calls: list[tuple[str | None, str, str]] = []
    fail = False

    def __init__(self, repo_full_name: str | None = None) -> None:
        self.repo_full_name = repo_full_name

    def for_repo(self, repo_full_name: str) -> FakeGateway:
        return FakeGateway(repo_full_name)

    def execute(self, op: str, target: str, args: Mapping[str, object]) -> ActionResult:
        _ = args
        FakeGateway.calls.append((self.repo_full_name, op, target))
        if FakeGateway.fail:
            return ActionResult(ok=False, message="HTTP 502")
        return ActionResult(ok=True, message="")

    def query_rate_limit(self) -> RateLimitSnapshot:
        return RateLimitSnapshot(remaining=FakeGateway.remaining, reset_at=1700000000)


class FakeOrchestrator:
    instances: list[FakeOrchestrator] = []
    summary_status = "completed"
    outcome = "completed"
    interrupt = False

    def __init__(self, config: ReviewConfig, **kwargs: object) -> None:
        self.config = config
        self.kwargs = kwargs
        self.resume: bool | None = None
        FakeOrchestrator.instances.append(self)

    def run(self, *, resume: bool = False) -> ReviewRunSummary:
        self.resume = resume
        if FakeOrchestrator.interrupt:
            raise KeyboardInterrupt
        return ReviewRunSummary(
            run_id="20260101-000000-abcdef",
            status=FakeOrchestrator.summary_status,
            results=tuple(
                RepoRunResult(
                    repo=target.repo,
                    outcome=FakeOrchestrator.outcome,
                    duration_seconds=12,
                    session_id="ru-x",
                )
                for target in self.config.repos
            ),
            skipped_repos=(),
            pending_repos=(),
        )


@pytest.fixture(autouse=True)
def _fakes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    FakeGateway.remaining = 4000
    FakeGateway.calls = []
    FakeGateway.fail = False
    FakeOrchestrator.instances = []
    FakeOrchestrator.summary_status = "completed"
    FakeOrchestrator.outcome = "completed"
    FakeOrchestrator.interrupt = False
    monkeypatch.setattr(cli, "GitHubGateway", FakeGateway)
    monkeypatch.setattr(cli, "ReviewOrchestrator", FakeOrchestrator)
    monkeypatch.setenv("FLEETREVIEW_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("REVIEW_PARALLEL", raising=False)


def _write_plan(path: Path, repo: str = "octo/widgets") -> Path:
    path.write_text(
        json.dumps(
            {
                "schema_version": 1,
                "repo": repo,
                "items": [],
                "gh_actions": [
                    {"op": "comment", "target": "issue#3", "body": "Done"},
                    {"op": "label", "target": "pr#4", "labels": ["reviewed"]},
                ],
                "git": {},
            }
        ),
        encoding="utf-8",
    )
    return path


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    review = parser.parse_args(
        ["review", "--repo", "octo/a=/w/a", "--repo", "octo/b=/w/b", "--mode", "apply", "-v"]
    )
    assert review.command == "review"
    assert review.repo == ["octo/a=/w/a", "octo/b=/w/b"]
    assert review.mode == "apply"
    assert review.verbose == "high"
    assert review.resume is False

    low = parser.parse_args(["review", "--resume", "--verbose", "low"])
    assert low.verbose == "low"
    assert low.resume is True

    apply_plan = parser.parse_args(
        ["apply-plan", "--repo", "octo/a", "--plan", "p.json", "--state-dir", "/s"]
    )
    assert apply_plan.plan == Path("p.json")
    assert apply_plan.state_dir == Path("/s")

    assert parser.parse_args(["checkpoint", "clear"]).checkpoint_command == "clear"
    assert parser.parse_args(["state", "show"]).state_command == "show"
    assert parser.parse_args(["governor", "status"]).governor_command == "status"


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["apply-plan", "--plan", "p.json"],
        ["checkpoint", "list"],
        ["review", "--mode", "yolo"],
        ["review", "-v", "loud"],
    ],
)
def test_parser_rejects_invalid_arguments(argv: list[str]) -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(argv)


def test_review_runs_orchestrator_and_prints_summary(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    cli.main(["review", "--repo", f"octo/widgets={tmp_path / 'w'}", "--mode", "apply"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "completed"
    assert payload["results"] == [
        {
            "repo": "octo/widgets",
            "outcome": "completed",
            "duration_seconds": 12,
            "actions_failed": 0,
        }
    ]
    orchestrator = FakeOrchestrator.instances[0]
    assert orchestrator.config.mode == "apply"
    assert orchestrator.config.state_dir == tmp_path / "state"
    assert orchestrator.resume is False
    assert sorted(orchestrator.kwargs) == [
        "driver",
        "github",
        "governor",
        "ledger",
        "monitor",
        "store",
    ]


def test_review_reads_repos_from_config_file(tmp_path: Path) -> None:
    cfg = tmp_path / "fleetreview.toml"
    cfg.write_text(
        f'[review]\nstate_dir = "{tmp_path / "cfg-state"}"\n'
        'quiet_period_seconds = 12\n\n[repos]\n"octo/widgets" = "w"\n',
        encoding="utf-8",
    )

    cli.main(["review", "--config", str(cfg), "--resume"])

    orchestrator = FakeOrchestrator.instances[0]
    assert orchestrator.resume is True
    assert orchestrator.config.state_dir == tmp_path / "cfg-state"
    assert [target.repo for target in orchestrator.config.repos] == ["octo/widgets"]
    monitor = orchestrator.kwargs["monitor"]
    assert monitor.tuning.quiet_period_seconds == 12.0  # type: ignore[attr-defined]


def test_review_exits_non_zero_when_any_repo_failed(tmp_path: Path) -> None:
    FakeOrchestrator.outcome = "timeout"

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["review", "--repo", f"octo/widgets={tmp_path}"])

    assert excinfo.value.code == 1


def test_review_interrupt_exits_130(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    FakeOrchestrator.interrupt = True

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["review", "--repo", f"octo/widgets={tmp_path}"])

    assert excinfo.value.code == 130
    assert "progress saved" in capsys.readouterr().err


def test_review_without_repos_is_a_config_error() -> None:
    with pytest.raises(SystemExit, match="fleetreview: No repositories to review"):
        cli.main(["review"])


def test_review_rejects_malformed_repo_spec() -> None:
    with pytest.raises(SystemExit, match="owner/name=path"):
        cli.main(["review", "--repo", "octo/widgets"])


def test_apply_plan_executes_through_ledger(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    plan = _write_plan(tmp_path / "plan.json")
    argv = ["apply-plan", "--repo", "octo/widgets", "--plan", str(plan)]

    cli.main(argv)
    first = json.loads(capsys.readouterr().out)
    cli.main(argv)
    second = json.loads(capsys.readouterr().out)

    assert first == {
        "repo": "octo/widgets", "executed": 2, "skipped": 0, "failed": 0, "unrecorded": 0
    }
    assert second == {
        "repo": "octo/widgets", "executed": 0, "skipped": 2, "failed": 0, "unrecorded": 0
    }
    assert FakeGateway.calls == [
        ("octo/widgets", "comment", "issue#3"),
        ("octo/widgets", "label", "pr#4"),
    ]
    assert (tmp_path / "state" / "review" / "gh-actions.jsonl").exists()


def test_apply_plan_exits_non_zero_on_failed_action(tmp_path: Path) -> None:
    FakeGateway.fail = True
    plan = _write_plan(tmp_path / "plan.json")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            [
                "apply-plan",
                "--repo",
                "octo/widgets",
                "--plan",
                str(plan),
                "--state-dir",
                str(tmp_path / "other"),
            ]
        )

    assert excinfo.value.code == 1
    assert (tmp_path / "other" / "review" / "gh-actions.jsonl").exists()


def test_apply_plan_rejects_plan_for_other_repo(tmp_path: Path) -> None:
    plan = _write_plan(tmp_path / "plan.json", repo="octo/gadgets")

    with pytest.raises(SystemExit, match="does not match --repo"):
        cli.main(["apply-plan", "--repo", "octo/widgets", "--plan", str(plan)])
    assert FakeGateway.calls == []


def test_apply_plan_reports_invalid_plan(tmp_path: Path) -> None:
    plan = tmp_path / "plan.json"
    plan.write_text('{"schema_version": 1}', encoding="utf-8")

    with pytest.raises(SystemExit, match="fleetreview: Plan repo must be"):
        cli.main(["apply-plan", "--repo", "octo/widgets", "--plan", str(plan)])


def test_checkpoint_show_and_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cli.main(["checkpoint", "show"])
    assert capsys.readouterr().out.strip() == "No checkpoint."

    store = ReviewStateStore(tmp_path / "state" / "review")
    store.save_checkpoint(
        run_id="run-1", mode="plan", completed_repos=["octo/a"], pending_repos=["octo/b"]
    )
    cli.main(["checkpoint", "show"])
    shown = json.loads(capsys.readouterr().out)
    assert shown["run_id"] == "run-1"
    assert shown["pending_repos"] == ["octo/b"]

    cli.main(["checkpoint", "clear"])
    assert capsys.readouterr().out.strip() == "Checkpoint cleared."
    assert store.load_checkpoint() is None


def test_state_show_prints_document(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = ReviewStateStore(tmp_path / "state" / "review")
    store.record_repo_outcome("octo/widgets", "completed", 30, 1, 0)

    cli.main(["state", "show", "--state-dir", str(tmp_path / "state")])

    payload = json.loads(capsys.readouterr().out)
    assert payload["version"] == 2
    assert payload["repos"]["octo/widgets"]["items_fixed"] == 1


def test_governor_status_reflects_quota(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("REVIEW_PARALLEL", "6")
    FakeGateway.remaining = 800

    cli.main(["governor", "status"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["target_parallelism"] == 6
    assert payload["effective_parallelism"] == 3
    assert payload["github_remaining"] == 800
    assert payload["circuit_breaker_open"] is False
