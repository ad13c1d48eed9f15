from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import logging
import os
from pathlib import Path
import secrets
import time

from fleetreview.observability import log_event


LOGGER = logging.getLogger("fleetreview.locking")
_RUN_LOCK_FILENAME = "review.lock"
_DEFAULT_POLL_INTERVAL_SECONDS = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a directory lock cannot be acquired within its timeout."""


class RunLockError(RuntimeError):
    """Raised when another review run already holds the run lock."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    owner: str | None
    started_at: str | None
    token: str | None


class DirectoryLock:
    """Cross-process advisory lock built on atomic ``mkdir``.

    The owner metadata lives next to the lock directory in ``<name>.info`` so a
    waiter can tell a live holder from one whose process died mid-update.
    """

    def __init__(
        self,
        lock_dir: Path,
        *,
        owner: str,
        timeout_seconds: float,
        poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._lock_dir = lock_dir
        self._info_path = lock_dir.with_name(_info_filename(lock_dir))
        self._owner = owner
        self._timeout_seconds = timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    @property
    def info_path(self) -> Path:
        return self._info_path

    @contextmanager
    def hold(self) -> Iterator[None]:
        token = self.acquire()
        try:
            yield
        finally:
            self.release(token)

    def acquire(self) -> str:
        self._lock_dir.parent.mkdir(parents=True, exist_ok=True)
        deadline = self._clock() + self._timeout_seconds
        while True:
            token = self._try_acquire()
            if token is not None:
                return token
            if self.clear_if_stale():
                continue
            if self._clock() >= deadline:
                owner = read_lock_owner(self._info_path)
                log_event(
                    LOGGER,
                    "lock_acquire_timed_out",
                    lock_dir=str(self._lock_dir),
                    owner_pid=owner.pid,
                    owner=owner.owner,
                    timeout_seconds=self._timeout_seconds,
                )
                raise LockTimeoutError(
                    f"Timed out after {self._timeout_seconds}s waiting for lock "
                    f"{self._lock_dir} (held by pid={owner.pid}, owner={owner.owner})"
                )
            self._sleep(self._poll_interval_seconds)

    def release(self, token: str) -> None:
        owner = read_lock_owner(self._info_path)
        if owner.token is not None and owner.token != token:
            log_event(LOGGER, "lock_release_skipped", lock_dir=str(self._lock_dir))
            return
        try:
            os.unlink(self._info_path)
        except FileNotFoundError:
            pass
        try:
            os.rmdir(self._lock_dir)
        except FileNotFoundError:
            pass

    def clear_if_stale(self) -> bool:
        if not self._info_path.exists():
            return False
        owner = read_lock_owner(self._info_path)
        if owner.pid is not None and (owner.pid == os.getpid() or _pid_is_running(owner.pid)):
            return False
        # Claim the stale info file first so two waiters never both clear the
        # lock, and so a lock re-acquired in between is left alone.
        claimed_path = self._info_path.with_name(
            f"{self._info_path.name}.stale-{secrets.token_hex(4)}"
        )
        try:
            os.rename(self._info_path, claimed_path)
        except FileNotFoundError:
            return False
        claimed = read_lock_owner(claimed_path)
        if claimed.token != owner.token:
            os.rename(claimed_path, self._info_path)
            return False
        os.unlink(claimed_path)
        log_event(
            LOGGER,
            "stale_lock_cleared",
            lock_dir=str(self._lock_dir),
            owner_pid=owner.pid,
        )
        try:
            os.rmdir(self._lock_dir)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _try_acquire(self) -> str | None:
        try:
            os.mkdir(self._lock_dir)
        except FileExistsError:
            return None
        token = secrets.token_hex(16)
        payload = {
            "pid": os.getpid(),
            "owner": self._owner,
            "started_at": utc_now_iso8601(),
            "token": token,
        }
        try:
            _write_text_atomic(self._info_path, json.dumps(payload, sort_keys=True) + "\n")
        except Exception:
            try:
                os.rmdir(self._lock_dir)
            except FileNotFoundError:
                pass
            raise
        return token


@contextmanager
def review_run_lock(*, state_dir: Path, run_id: str) -> Iterator[None]:
    lock = _RunLock(lock_path=state_dir / _RUN_LOCK_FILENAME, run_id=run_id)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class _RunLock:
    def __init__(self, *, lock_path: Path, run_id: str) -> None:
        self._lock_path = lock_path
        self._run_id = run_id
        self._inode: int | None = None
        self._token: str | None = None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._token = None
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_stale_lock_if_dead_owner():
                    continue
                raise RunLockError(self._active_lock_error_message()) from None

            try:
                self._inode = os.fstat(fd).st_ino
                lock_token = secrets.token_hex(16)
                payload = {
                    "pid": os.getpid(),
                    "owner": self._run_id,
                    "started_at": utc_now_iso8601(),
                    "token": lock_token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                try:
                    os.close(fd)
                finally:
                    try:
                        os.unlink(self._lock_path)
                    except FileNotFoundError:
                        pass
                self._inode = None
                raise
            else:
                os.close(fd)
                self._token = lock_token
                log_event(LOGGER, "run_lock_acquired", run_id=self._run_id)
                return

        raise RunLockError(self._active_lock_error_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            current = self._lock_path.stat()
        except FileNotFoundError:
            return
        if current.st_ino != inode:
            return
        if read_lock_owner(self._lock_path).token != token:
            return
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            pass

    def _clear_stale_lock_if_dead_owner(self) -> bool:
        owner = read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid():
            return False
        if _pid_is_running(owner.pid):
            return False
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _active_lock_error_message(self) -> str:
        owner = read_lock_owner(self._lock_path)
        owner_parts: list[str] = []
        if owner.pid is not None:
            owner_parts.append(f"pid={owner.pid}")
        if owner.owner:
            owner_parts.append(f"run_id={owner.owner}")
        owner_detail = f" ({', '.join(owner_parts)})" if owner_parts else ""
        return (
            f"Another review run appears active{owner_detail}. Lock file: {self._lock_path}. "
            "If this lock is stale, stop running review processes and remove the lock file, "
            "then retry."
        )


def read_lock_owner(path: Path) -> LockOwner:
    try:
        payload_text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockOwner(pid=None, owner=None, started_at=None, token=None)
    if not payload_text:
        return LockOwner(pid=None, owner=None, started_at=None, token=None)
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return LockOwner(pid=None, owner=None, started_at=None, token=None)
    if not isinstance(payload, dict):
        return LockOwner(pid=None, owner=None, started_at=None, token=None)
    raw_pid = payload.get("pid")
    raw_owner = payload.get("owner")
    raw_started_at = payload.get("started_at")
    raw_token = payload.get("token")
    return LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) and not isinstance(raw_pid, bool) else None,
        owner=raw_owner if isinstance(raw_owner, str) else None,
        started_at=raw_started_at if isinstance(raw_started_at, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _info_filename(lock_dir: Path) -> str:
    name = lock_dir.name
    if name.endswith(".d"):
        name = name[: -len(".d")]
    return f"{name}.info"


def _write_text_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        if exc.errno == errno.ESRCH:
            return False
        return True
    return True
