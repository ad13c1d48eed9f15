from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from fleetreview import locking as locking_module
from fleetreview.locking import (
    DirectoryLock,
    LockTimeoutError,
    RunLockError,
    read_lock_owner,
    review_run_lock,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _write_info(path: Path, *, pid: int, token: str = "other-token") -> None:
    path.write_text(
        json.dumps({"pid": pid, "owner": "someone", "started_at": "t", "token": token}),
        encoding="utf-8",
    )


def test_directory_lock_acquire_and_release(tmp_path: Path) -> None:
    lock = DirectoryLock(tmp_path / "state.lock.d", owner="test", timeout_seconds=1)

    with lock.hold():
        assert lock.lock_dir.is_dir()
        assert lock.info_path == tmp_path / "state.lock.info"
        owner = read_lock_owner(lock.info_path)
        assert owner.pid == os.getpid()
        assert owner.owner == "test"
        assert owner.token is not None

    assert not lock.lock_dir.exists()
    assert not lock.info_path.exists()


def test_directory_lock_times_out_while_live_owner_holds_it(tmp_path: Path) -> None:
    clock = FakeClock()
    lock_dir = tmp_path / "state.lock.d"
    lock_dir.mkdir()
    _write_info(tmp_path / "state.lock.info", pid=os.getpid())
    lock = DirectoryLock(
        lock_dir,
        owner="waiter",
        timeout_seconds=0.5,
        poll_interval_seconds=0.1,
        clock=clock,
        sleep=clock.sleep,
    )

    with pytest.raises(LockTimeoutError, match="Timed out after 0.5s"):
        lock.acquire()
    assert lock_dir.is_dir()
    assert clock.now >= 0.5


def test_directory_lock_reclaims_lock_of_dead_owner(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_dir = tmp_path / "state.lock.d"
    lock_dir.mkdir()
    _write_info(tmp_path / "state.lock.info", pid=424242)
    monkeypatch.setattr(locking_module, "_pid_is_running", lambda pid: False)
    lock = DirectoryLock(lock_dir, owner="next", timeout_seconds=1)

    token = lock.acquire()

    owner = read_lock_owner(lock.info_path)
    assert owner.owner == "next"
    assert owner.token == token
    lock.release(token)
    assert not lock_dir.exists()
    assert list(tmp_path.iterdir()) == []


def test_directory_lock_without_info_file_is_not_stale(tmp_path: Path) -> None:
    lock_dir = tmp_path / "state.lock.d"
    lock_dir.mkdir()
    lock = DirectoryLock(lock_dir, owner="x", timeout_seconds=1)

    assert lock.clear_if_stale() is False
    assert lock_dir.is_dir()


def test_directory_lock_release_with_foreign_token_leaves_lock(tmp_path: Path) -> None:
    lock = DirectoryLock(tmp_path / "state.lock.d", owner="x", timeout_seconds=1)
    token = lock.acquire()

    lock.release("not-" + token)

    assert lock.lock_dir.is_dir()
    lock.release(token)
    assert not lock.lock_dir.exists()


def test_directory_lock_rejects_non_positive_timeout(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="timeout_seconds must be positive"):
        DirectoryLock(tmp_path / "x.d", owner="x", timeout_seconds=0)


def test_read_lock_owner_tolerates_garbage(tmp_path: Path) -> None:
    path = tmp_path / "lock.info"
    assert read_lock_owner(path).pid is None
    path.write_text("not json", encoding="utf-8")
    assert read_lock_owner(path).pid is None
    path.write_text("[1, 2]", encoding="utf-8")
    assert read_lock_owner(path).token is None
    path.write_text(json.dumps({"pid": True, "owner": 3}), encoding="utf-8")
    owner = read_lock_owner(path)
    assert owner.pid is None
    assert owner.owner is None


def test_review_run_lock_creates_and_removes_lock_file(tmp_path: Path) -> None:
    with review_run_lock(state_dir=tmp_path, run_id="run-1"):
        payload = json.loads((tmp_path / "review.lock").read_text(encoding="utf-8"))
        assert payload["pid"] == os.getpid()
        assert payload["owner"] == "run-1"
        assert isinstance(payload["token"], str)
    assert not (tmp_path / "review.lock").exists()


def test_review_run_lock_rejects_when_live_run_holds_it(tmp_path: Path) -> None:
    (tmp_path / "review.lock").write_text(
        json.dumps({"pid": os.getpid(), "owner": "run-0", "started_at": "t", "token": "x"}),
        encoding="utf-8",
    )

    with pytest.raises(RunLockError, match="Another review run appears active") as excinfo:
        with review_run_lock(state_dir=tmp_path, run_id="run-1"):
            pass
    assert "run_id=run-0" in str(excinfo.value)


def test_review_run_lock_reclaims_stale_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = tmp_path / "review.lock"
    lock_path.write_text(
        json.dumps({"pid": 424242, "owner": "run-0", "started_at": "t", "token": "x"}),
        encoding="utf-8",
    )
    monkeypatch.setattr(locking_module, "_pid_is_running", lambda pid: False)

    with review_run_lock(state_dir=tmp_path, run_id="run-1"):
        assert json.loads(lock_path.read_text(encoding="utf-8"))["owner"] == "run-1"

    assert not lock_path.exists()


def test_review_run_lock_does_not_remove_replaced_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "review.lock"
    with review_run_lock(state_dir=tmp_path, run_id="run-1"):
        lock_path.unlink()
        lock_path.write_text(json.dumps({"pid": 1, "token": "other"}), encoding="utf-8")

    assert lock_path.exists()


def test_pid_is_running_handles_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    assert locking_module._pid_is_running(0) is False

    def raise_lookup(pid: int, sig: int) -> None:
        raise ProcessLookupError()

    monkeypatch.setattr(locking_module.os, "kill", raise_lookup)
    assert locking_module._pid_is_running(123) is False

    def raise_permission(pid: int, sig: int) -> None:
        raise PermissionError()

    monkeypatch.setattr(locking_module.os, "kill", raise_permission)
    assert locking_module._pid_is_running(123) is True
