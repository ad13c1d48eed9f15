from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import re
import threading
from typing import Protocol, cast

from fleetreview.locking import DirectoryLock, LockTimeoutError, utc_now_iso8601
from fleetreview.models import (
    ActionOp,
    ActionResult,
    ActionStatus,
    GhAction,
    LedgerEntry,
    ReviewPlan,
)
from fleetreview.observability import log_event, warn_event


LOGGER = logging.getLogger("fleetreview.ledger")

LEDGER_FILENAME = "gh-actions.jsonl"
LEDGER_LOCK_DIRNAME = "gh-actions.lock.d"
_VALID_OPS = frozenset({"comment", "close", "label"})
_TARGET_RE = re.compile(r"^(issue|pr)#([1-9][0-9]*)$")
_REPO_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


class PlanValidationError(ValueError):
    """The review plan document is malformed; none of its actions run."""


class ActionClient(Protocol):
    def execute(self, op: str, target: str, args: Mapping[str, object]) -> ActionResult: ...


@dataclass(frozen=True)
class ExecutionSummary:
    executed: int
    skipped: int
    failed: int
    unrecorded: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.unrecorded == 0


def canonicalize(action: Mapping[str, object] | GhAction | str) -> str:
    """Return the order-independent JSON text used as an action's identity."""
    if isinstance(action, GhAction):
        payload: object = action.to_json_dict()
    elif isinstance(action, str):
        payload = json.loads(action)
    else:
        payload = dict(action)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ActionLedger:
    """Append-only JSONL record of external side effects.

    An action counts as executed once the ledger holds an ``ok`` line for the
    same repo and canonical action. ``failed`` lines never block a retry.
    """

    def __init__(
        self,
        review_dir: Path,
        *,
        lock_timeout_seconds: float = 10.0,
        repo_lock_timeout_seconds: float = 300.0,
    ) -> None:
        self._review_dir = review_dir
        self._path = review_dir / LEDGER_FILENAME
        self._file_lock = DirectoryLock(
            review_dir / LEDGER_LOCK_DIRNAME,
            owner="gh-actions-ledger",
            timeout_seconds=lock_timeout_seconds,
        )
        self._repo_lock_timeout_seconds = repo_lock_timeout_seconds
        self._repo_locks: dict[str, threading.Lock] = {}
        self._repo_locks_guard = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def already_executed(self, repo: str, action: Mapping[str, object] | GhAction | str) -> bool:
        canonical = canonicalize(action)
        self._review_dir.mkdir(parents=True, exist_ok=True)
        with self._file_lock.hold():
            entries = self._read_entries()
        return any(
            entry.repo == repo and entry.status == "ok" and canonicalize(entry.action) == canonical
            for entry in entries
        )

    def record(
        self,
        repo: str,
        action: Mapping[str, object] | GhAction | str,
        status: ActionStatus,
        message: str = "",
    ) -> LedgerEntry:
        entry = LedgerEntry(
            ts=utc_now_iso8601(),
            repo=repo,
            action=cast(dict[str, object], json.loads(canonicalize(action))),
            status=status,
            message=message,
        )
        line = json.dumps(
            {
                "ts": entry.ts,
                "repo": entry.repo,
                "action": entry.action,
                "status": entry.status,
                "message": entry.message,
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        self._review_dir.mkdir(parents=True, exist_ok=True)
        with self._file_lock.hold():
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        return entry

    def entries(self) -> tuple[LedgerEntry, ...]:
        self._review_dir.mkdir(parents=True, exist_ok=True)
        with self._file_lock.hold():
            return tuple(self._read_entries())

    def execute_all(
        self, repo: str, actions: Sequence[GhAction], client: ActionClient
    ) -> ExecutionSummary:
        """Run each action at most once, holding the repo's lock across processes.

        Every action is attempted in order; one failing action never stops the
        ones after it.
        """
        counts = {"executed": 0, "skipped": 0, "failed": 0, "unrecorded": 0}
        with self._repo_lock(repo):
            repo_lock = self._repo_file_lock(repo)
            try:
                token = repo_lock.acquire()
            except LockTimeoutError as exc:
                warn_event(
                    LOGGER,
                    "gh_actions_repo_lock_timeout",
                    repo=repo,
                    actions=len(actions),
                    message=str(exc),
                )
                counts["failed"] = len(actions)
            else:
                try:
                    for action in actions:
                        counts[self._apply_action(repo, action, client)] += 1
                finally:
                    repo_lock.release(token)
        summary = ExecutionSummary(**counts)
        log_event(LOGGER, "gh_actions_applied", repo=repo, **counts)
        return summary

    def _apply_action(self, repo: str, action: GhAction, client: ActionClient) -> str:
        try:
            done = self.already_executed(repo, action)
        except LockTimeoutError as exc:
            # Without the ledger there is no way to know whether it already ran.
            self._warn_action(repo, action, "gh_action_ledger_unavailable", str(exc))
            return "failed"
        if done:
            try:
                self.record(repo, action, "skipped", "already executed")
            except LockTimeoutError as exc:
                self._warn_action(repo, action, "gh_action_unrecorded", str(exc))
            return "skipped"

        try:
            result = client.execute(action.op, action.target, action.args)
        except Exception as exc:  # noqa: BLE001
            result = ActionResult(ok=False, message=f"{type(exc).__name__}: {exc}")
        if not result.ok:
            self._warn_action(repo, action, "gh_action_failed", result.message)
        try:
            self.record(repo, action, "ok" if result.ok else "failed", result.message)
        except LockTimeoutError as exc:
            self._warn_action(repo, action, "gh_action_unrecorded", str(exc))
            return "unrecorded" if result.ok else "failed"
        return "executed" if result.ok else "failed"

    def _warn_action(self, repo: str, action: GhAction, event: str, message: str) -> None:
        warn_event(LOGGER, event, repo=repo, op=action.op, target=action.target, message=message)

    def _repo_file_lock(self, repo: str) -> DirectoryLock:
        slug = _REPO_SLUG_RE.sub("-", repo).strip("-") or "repo"
        return DirectoryLock(
            self._review_dir / f"gh-actions.{slug}.lock.d",
            owner=f"gh-actions:{repo}",
            timeout_seconds=self._repo_lock_timeout_seconds,
        )

    def _repo_lock(self, repo: str) -> threading.Lock:
        with self._repo_locks_guard:
            lock = self._repo_locks.get(repo)
            if lock is None:
                lock = threading.Lock()
                self._repo_locks[repo] = lock
            return lock

    def _read_entries(self) -> list[LedgerEntry]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        entries: list[LedgerEntry] = []
        for line_number, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                # A torn final line from a crashed writer; it never recorded an ok.
                warn_event(
                    LOGGER, "ledger_line_unparseable", path=str(self._path), line=line_number
                )
                continue
            entry = _entry_from_json(payload)
            if entry is not None:
                entries.append(entry)
        return entries


def load_plan(path: Path) -> ReviewPlan:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PlanValidationError(f"Plan file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise PlanValidationError(f"Plan file {path} is not valid JSON: {exc}") from exc
    return parse_plan(payload)


def parse_plan(payload: object) -> ReviewPlan:
    if not isinstance(payload, dict):
        raise PlanValidationError("Plan must be a JSON object")
    data = cast(dict[str, object], payload)

    schema_version = data.get("schema_version")
    if isinstance(schema_version, bool) or not isinstance(schema_version, int):
        raise PlanValidationError("Plan schema_version must be an integer")
    repo = data.get("repo")
    if not isinstance(repo, str) or not repo:
        raise PlanValidationError("Plan repo must be a non-empty string")

    items_raw = data.get("items", [])
    if not isinstance(items_raw, list) or not all(isinstance(item, dict) for item in items_raw):
        raise PlanValidationError("Plan items must be a list of objects")

    actions_raw = data.get("gh_actions", [])
    if not isinstance(actions_raw, list):
        raise PlanValidationError("Plan gh_actions must be a list")
    actions = tuple(_parse_action(raw, index) for index, raw in enumerate(actions_raw))

    git_raw = data.get("git", {})
    if not isinstance(git_raw, dict):
        raise PlanValidationError("Plan git must be an object")

    return ReviewPlan(
        schema_version=schema_version,
        repo=repo,
        items=tuple(cast(list[dict[str, object]], items_raw)),
        gh_actions=actions,
        git=cast(dict[str, object], git_raw),
    )


def parse_target(target: str) -> tuple[str, int]:
    match = _TARGET_RE.match(target)
    if match is None:
        raise PlanValidationError(f"Action target must look like issue#N or pr#N, got {target!r}")
    return match.group(1), int(match.group(2))


def _parse_action(raw: object, index: int) -> GhAction:
    if not isinstance(raw, dict):
        raise PlanValidationError(f"gh_actions[{index}] must be an object")
    data = cast(dict[str, object], raw)
    op = data.get("op")
    if op not in _VALID_OPS:
        raise PlanValidationError(
            f"gh_actions[{index}].op must be one of comment, close, label; got {op!r}"
        )
    target = data.get("target")
    if not isinstance(target, str):
        raise PlanValidationError(f"gh_actions[{index}].target must be a string")
    parse_target(target)
    args = {key: value for key, value in data.items() if key not in {"op", "target"}}
    if op == "comment" and not isinstance(args.get("body"), str):
        raise PlanValidationError(f"gh_actions[{index}] comment requires a string body")
    if op == "label":
        labels = args.get("labels")
        if not isinstance(labels, list) or not labels or not all(
            isinstance(label, str) and label for label in labels
        ):
            raise PlanValidationError(f"gh_actions[{index}] label requires a non-empty labels list")
    return GhAction(op=cast(ActionOp, op), target=target, args=args)


def _entry_from_json(payload: object) -> LedgerEntry | None:
    if not isinstance(payload, dict):
        return None
    data = cast(dict[str, object], payload)
    repo = data.get("repo")
    action = data.get("action")
    status = data.get("status")
    if not isinstance(repo, str) or status not in {"ok", "failed", "skipped"}:
        return None
    if isinstance(action, str):
        try:
            action = json.loads(action)
        except json.JSONDecodeError:
            return None
    if not isinstance(action, dict):
        return None
    ts = data.get("ts")
    message = data.get("message")
    return LedgerEntry(
        ts=ts if isinstance(ts, str) else "",
        repo=repo,
        action=cast(dict[str, object], action),
        status=cast(ActionStatus, status),
        message=message if isinstance(message, str) else "",
    )
