from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import cast

from fleetreview.locking import DirectoryLock, LockTimeoutError, utc_now_iso8601
from fleetreview.models import (
    ItemKey,
    ItemOutcomeRecord,
    RepoOutcomeRecord,
    ReviewCheckpoint,
    ReviewState,
    RunRecord,
)
from fleetreview.observability import log_event


LOGGER = logging.getLogger("fleetreview.checkpoint")

STATE_SCHEMA_VERSION = 2
CHECKPOINT_SCHEMA_VERSION = 1
STATE_FILENAME = "review-state.json"
CHECKPOINT_FILENAME = "review-checkpoint.json"
STATE_LOCK_DIRNAME = "state.lock.d"
_KNOWN_KEYS = frozenset({"version", "repos", "items", "runs"})

StateTransform = Callable[[ReviewState], ReviewState]


class StateLockTimeoutError(LockTimeoutError):
    """The review state lock could not be acquired; the update was not applied."""


class ReviewStateCorruptError(RuntimeError):
    """The review state document exists but cannot be parsed."""


class ReviewStateStore:
    """Crash-safe, lock-guarded store for review progress.

    Every write goes through ``update``: take the in-process lock, then the
    directory lock, reload the latest committed document, transform it, write a
    temp file in the same directory and ``os.replace`` it over the live file.
    Readers therefore only ever see a complete document.
    """

    def __init__(self, review_dir: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self._review_dir = review_dir
        self._state_path = review_dir / STATE_FILENAME
        self._checkpoint_path = review_dir / CHECKPOINT_FILENAME
        self._thread_lock = threading.Lock()
        self._dir_lock = DirectoryLock(
            review_dir / STATE_LOCK_DIRNAME,
            owner="review-state",
            timeout_seconds=lock_timeout_seconds,
        )

    @property
    def state_path(self) -> Path:
        return self._state_path

    @property
    def checkpoint_path(self) -> Path:
        return self._checkpoint_path

    def init(self, run_id: str | None = None, *, mode: str = "plan") -> None:
        def _init(state: ReviewState) -> ReviewState:
            if run_id is not None and run_id not in state.runs:
                state.runs[run_id] = RunRecord(mode=mode, started_at=utc_now_iso8601())
            return state

        with self._locked():
            created = not self._state_path.exists()
            if created:
                _write_json_atomic(self._state_path, state_to_json_dict(ReviewState()))
            if run_id is not None:
                self._apply_locked(_init)
        if created:
            log_event(LOGGER, "review_state_initialized", path=str(self._state_path))

    def load(self) -> ReviewState:
        return _read_state(self._state_path)

    def update(self, transform: StateTransform) -> ReviewState:
        with self._locked():
            return self._apply_locked(transform)

    def record_repo_outcome(
        self,
        repo: str,
        outcome: str,
        duration_seconds: int,
        items_fixed: int,
        items_skipped: int,
    ) -> None:
        record = RepoOutcomeRecord(
            outcome=outcome,
            duration_seconds=duration_seconds,
            items_fixed=items_fixed,
            items_skipped=items_skipped,
            last_review=utc_now_iso8601(),
        )

        def _record(state: ReviewState) -> ReviewState:
            state.repos[repo] = record
            return state

        self.update(_record)
        log_event(
            LOGGER,
            "repo_outcome_recorded",
            repo=repo,
            outcome=outcome,
            duration_seconds=duration_seconds,
        )

    def record_item_outcome(
        self, repo: str, item_type: str, number: int, outcome: str, notes: str = ""
    ) -> None:
        key = ItemKey(repo=repo, item_type=item_type, number=number)
        record = ItemOutcomeRecord(item_type=item_type, outcome=outcome, notes=notes)

        def _record(state: ReviewState) -> ReviewState:
            state.items[key] = record
            return state

        self.update(_record)

    def record_run_finished(self, run_id: str, status: str) -> None:
        finished_at = utc_now_iso8601()

        def _finish(state: ReviewState) -> ReviewState:
            existing = state.runs.get(run_id)
            if existing is None:
                existing = RunRecord(mode="unknown", started_at=finished_at)
            state.runs[run_id] = replace(existing, finished_at=finished_at, status=status)
            return state

        self.update(_finish)

    def is_recently_reviewed(
        self, repo: str, days: int, *, now: datetime | None = None
    ) -> bool:
        if not self._state_path.exists():
            return False
        record = self.load().repos.get(repo)
        if record is None:
            return False
        reviewed_at = parse_iso8601(record.last_review)
        if reviewed_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        return current - reviewed_at < timedelta(days=days)

    def save_checkpoint(
        self,
        *,
        run_id: str,
        mode: str,
        completed_repos: Iterable[str],
        pending_repos: Iterable[str],
    ) -> ReviewCheckpoint:
        checkpoint = ReviewCheckpoint(
            run_id=run_id,
            mode=mode,
            timestamp=utc_now_iso8601(),
            completed_repos=tuple(completed_repos),
            pending_repos=tuple(pending_repos),
            version=CHECKPOINT_SCHEMA_VERSION,
        )
        with self._locked():
            _write_json_atomic(self._checkpoint_path, checkpoint_to_json_dict(checkpoint))
        log_event(
            LOGGER,
            "checkpoint_saved",
            run_id=run_id,
            repos_completed=checkpoint.repos_completed,
            repos_pending=checkpoint.repos_pending,
        )
        return checkpoint

    def load_checkpoint(self) -> ReviewCheckpoint | None:
        try:
            raw = self._checkpoint_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ReviewStateCorruptError(
                f"Checkpoint file {self._checkpoint_path} is not valid JSON: {exc}"
            ) from exc
        return checkpoint_from_json_dict(payload)

    def clear_checkpoint(self) -> None:
        try:
            self._checkpoint_path.unlink()
        except FileNotFoundError:
            return
        log_event(LOGGER, "checkpoint_cleared", path=str(self._checkpoint_path))

    def _apply_locked(self, transform: StateTransform) -> ReviewState:
        current = _read_state(self._state_path) if self._state_path.exists() else ReviewState()
        updated = transform(current)
        _write_json_atomic(self._state_path, state_to_json_dict(updated))
        return updated

    def _locked(self) -> _StoreLock:
        return _StoreLock(self._thread_lock, self._dir_lock, self._review_dir)


class _StoreLock:
    def __init__(
        self, thread_lock: threading.Lock, dir_lock: DirectoryLock, review_dir: Path
    ) -> None:
        self._thread_lock = thread_lock
        self._dir_lock = dir_lock
        self._review_dir = review_dir
        self._token: str | None = None

    def __enter__(self) -> None:
        self._review_dir.mkdir(parents=True, exist_ok=True)
        self._thread_lock.acquire()
        try:
            self._token = self._dir_lock.acquire()
        except LockTimeoutError as exc:
            self._thread_lock.release()
            raise StateLockTimeoutError(str(exc)) from exc
        except BaseException:
            self._thread_lock.release()
            raise

    def __exit__(self, *exc_info: object) -> None:
        try:
            if self._token is not None:
                self._dir_lock.release(self._token)
        finally:
            self._token = None
            self._thread_lock.release()


def state_to_json_dict(state: ReviewState) -> dict[str, object]:
    payload: dict[str, object] = dict(state.extras)
    payload["version"] = state.version
    payload["repos"] = {
        repo: {
            "outcome": record.outcome,
            "duration_seconds": record.duration_seconds,
            "items_fixed": record.items_fixed,
            "items_skipped": record.items_skipped,
            "last_review": record.last_review,
        }
        for repo, record in state.repos.items()
    }
    payload["items"] = {
        key.encode(): {"type": record.item_type, "outcome": record.outcome, "notes": record.notes}
        for key, record in state.items.items()
    }
    payload["runs"] = {
        run_id: {
            "mode": record.mode,
            "started_at": record.started_at,
            "finished_at": record.finished_at,
            "status": record.status,
        }
        for run_id, record in state.runs.items()
    }
    return payload


def state_from_json_dict(payload: object) -> ReviewState:
    if not isinstance(payload, dict):
        raise ReviewStateCorruptError("Review state must be a JSON object")
    data = cast(dict[str, object], payload)
    version = data.get("version", STATE_SCHEMA_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        raise ReviewStateCorruptError("Review state version must be an integer")

    repos: dict[str, RepoOutcomeRecord] = {}
    for repo, raw in _as_table(data.get("repos"), "repos").items():
        entry = _as_table(raw, f"repos[{repo}]")
        repos[repo] = RepoOutcomeRecord(
            outcome=_as_str(entry.get("outcome")),
            duration_seconds=_as_int(entry.get("duration_seconds")),
            items_fixed=_as_int(entry.get("items_fixed")),
            items_skipped=_as_int(entry.get("items_skipped")),
            last_review=_as_str(entry.get("last_review")),
        )

    items: dict[ItemKey, ItemOutcomeRecord] = {}
    for raw_key, raw in _as_table(data.get("items"), "items").items():
        entry = _as_table(raw, f"items[{raw_key}]")
        try:
            key = ItemKey.decode(raw_key)
        except ValueError as exc:
            raise ReviewStateCorruptError(str(exc)) from exc
        items[key] = ItemOutcomeRecord(
            item_type=_as_str(entry.get("type")) or key.item_type,
            outcome=_as_str(entry.get("outcome")),
            notes=_as_str(entry.get("notes")),
        )

    runs: dict[str, RunRecord] = {}
    for run_id, raw in _as_table(data.get("runs"), "runs").items():
        entry = _as_table(raw, f"runs[{run_id}]")
        finished_at = entry.get("finished_at")
        runs[run_id] = RunRecord(
            mode=_as_str(entry.get("mode")),
            started_at=_as_str(entry.get("started_at")),
            finished_at=finished_at if isinstance(finished_at, str) else None,
            status=_as_str(entry.get("status")) or "running",
        )

    extras = {key: value for key, value in data.items() if key not in _KNOWN_KEYS}
    return ReviewState(version=version, repos=repos, items=items, runs=runs, extras=extras)


def checkpoint_to_json_dict(checkpoint: ReviewCheckpoint) -> dict[str, object]:
    return {
        "version": checkpoint.version,
        "timestamp": checkpoint.timestamp,
        "run_id": checkpoint.run_id,
        "mode": checkpoint.mode,
        "repos_total": checkpoint.repos_total,
        "repos_completed": checkpoint.repos_completed,
        "repos_pending": checkpoint.repos_pending,
        "completed_repos": list(checkpoint.completed_repos),
        "pending_repos": list(checkpoint.pending_repos),
    }


def checkpoint_from_json_dict(payload: object) -> ReviewCheckpoint:
    if not isinstance(payload, dict):
        raise ReviewStateCorruptError("Checkpoint must be a JSON object")
    data = cast(dict[str, object], payload)
    version = data.get("version", CHECKPOINT_SCHEMA_VERSION)
    return ReviewCheckpoint(
        run_id=_as_str(data.get("run_id")),
        mode=_as_str(data.get("mode")),
        timestamp=_as_str(data.get("timestamp")),
        completed_repos=_as_str_tuple(data.get("completed_repos")),
        pending_repos=_as_str_tuple(data.get("pending_repos")),
        version=version if isinstance(version, int) else CHECKPOINT_SCHEMA_VERSION,
    )


def parse_iso8601(value: str) -> datetime | None:
    if not value:
        return None
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _read_state(path: Path) -> ReviewState:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ReviewState()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        log_event(LOGGER, "review_state_corrupt", path=str(path), error=str(exc))
        raise ReviewStateCorruptError(
            f"Review state {path} is not valid JSON ({exc}). Refusing to reset it: "
            "inspect or restore the file, then retry."
        ) from exc
    return state_from_json_dict(payload)


def _write_json_atomic(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _as_table(value: object, field: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(key, str) for key in value):
        raise ReviewStateCorruptError(f"Review state field {field} must be an object")
    return cast(dict[str, object], value)


def _as_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return 0
    return 0


def _as_str_tuple(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str))
