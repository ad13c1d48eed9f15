from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


SessionState = Literal["idle", "thinking", "generating", "stalled", "complete", "error"]
RecoveryAction = Literal["none", "interrupt", "compact"]
ActionStatus = Literal["ok", "failed", "skipped"]
ActionOp = Literal["comment", "close", "label"]
ReviewMode = Literal["plan", "apply"]

TERMINAL_SESSION_STATES: frozenset[SessionState] = frozenset({"complete", "error"})


@dataclass(frozen=True)
class RepoTarget:
    repo: str
    worktree: str


@dataclass(frozen=True)
class ItemKey:
    repo: str
    item_type: str
    number: int

    def encode(self) -> str:
        return f"{self.repo}#{self.item_type}-{self.number}"

    @classmethod
    def decode(cls, raw: str) -> ItemKey:
        repo, sep, rest = raw.rpartition("#")
        if not sep or not repo:
            raise ValueError(f"Invalid item key: {raw!r}")
        item_type, dash, number_text = rest.rpartition("-")
        if not dash or not item_type:
            raise ValueError(f"Invalid item key: {raw!r}")
        try:
            number = int(number_text)
        except ValueError as exc:
            raise ValueError(f"Invalid item key number: {raw!r}") from exc
        return cls(repo=repo, item_type=item_type, number=number)


@dataclass(frozen=True)
class RepoOutcomeRecord:
    outcome: str
    duration_seconds: int
    items_fixed: int
    items_skipped: int
    last_review: str


@dataclass(frozen=True)
class ItemOutcomeRecord:
    item_type: str
    outcome: str
    notes: str


@dataclass(frozen=True)
class RunRecord:
    mode: str
    started_at: str
    finished_at: str | None = None
    status: str = "running"


@dataclass
class ReviewState:
    version: int = 2
    repos: dict[str, RepoOutcomeRecord] = field(default_factory=dict)
    items: dict[ItemKey, ItemOutcomeRecord] = field(default_factory=dict)
    runs: dict[str, RunRecord] = field(default_factory=dict)
    extras: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ReviewCheckpoint:
    run_id: str
    mode: str
    timestamp: str
    completed_repos: tuple[str, ...]
    pending_repos: tuple[str, ...]
    version: int = 1

    @property
    def repos_total(self) -> int:
        return len(self.completed_repos) + len(self.pending_repos)

    @property
    def repos_completed(self) -> int:
        return len(self.completed_repos)

    @property
    def repos_pending(self) -> int:
        return len(self.pending_repos)


@dataclass(frozen=True)
class GhAction:
    op: ActionOp
    target: str
    args: dict[str, object]

    def to_json_dict(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.args)
        payload["op"] = self.op
        payload["target"] = self.target
        return payload


@dataclass(frozen=True)
class ReviewPlan:
    schema_version: int
    repo: str
    items: tuple[dict[str, object], ...]
    gh_actions: tuple[GhAction, ...]
    git: dict[str, object]


@dataclass(frozen=True)
class LedgerEntry:
    ts: str
    repo: str
    action: dict[str, object]
    status: ActionStatus
    message: str


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message: str


@dataclass(frozen=True)
class RateLimitSnapshot:
    remaining: int
    reset_at: int


@dataclass(frozen=True)
class GovernorStatus:
    github_remaining: int
    github_reset: int
    model_in_backoff: bool
    model_backoff_until: int
    effective_parallelism: int
    target_parallelism: int
    circuit_breaker_open: bool
    error_count: int

    def to_json_dict(self) -> dict[str, object]:
        return {
            "github_remaining": self.github_remaining,
            "github_reset": self.github_reset,
            "model_in_backoff": self.model_in_backoff,
            "model_backoff_until": self.model_backoff_until,
            "effective_parallelism": self.effective_parallelism,
            "target_parallelism": self.target_parallelism,
            "circuit_breaker_open": self.circuit_breaker_open,
            "error_count": self.error_count,
        }


@dataclass(frozen=True)
class SessionObservation:
    session_id: str
    raw_state: SessionState
    state: SessionState
    recovery: RecoveryAction
    stall_count: int


@dataclass(frozen=True)
class RepoRunResult:
    repo: str
    outcome: str
    duration_seconds: int
    session_id: str | None
    actions_failed: int = 0
