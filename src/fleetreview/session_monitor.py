from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
import json
import logging
import re
import threading
import time

from fleetreview.driver import DriverError, SessionDriver
from fleetreview.models import (
    TERMINAL_SESSION_STATES,
    RecoveryAction,
    SessionObservation,
    SessionState,
)
from fleetreview.observability import log_event, warn_event


LOGGER = logging.getLogger("fleetreview.session_monitor")

COMPACT_COMMAND = "/compact"
_INTERRUPT_ATTEMPTS = 2
_RESULT_SCAN_LINES = 50
_ERROR_SCAN_LINES = 20
_THINKING_SCAN_LINES = 5
_SPINNER_GLYPHS = frozenset("⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏")
_THINKING_RE = re.compile(r"\bthinking\b", re.IGNORECASE)
_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"rate.?limit",
        r"\b429\b",
        r"quota.?exceeded",
        r"panic:",
        r"SIGSEGV",
        r"\bkilled\b",
        r"unauthorized",
        r"invalid.*key",
        r"connection refused",
        r"timed out",
        r"context.*exceeded",
        r"token.*limit",
    )
)


class StallRecoveryError(RuntimeError):
    """Stall recovery failed or ran out of escalation steps."""


@dataclass(frozen=True)
class MonitorTuning:
    quiet_period_seconds: float = 30.0
    generating_velocity: float = 10.0
    hysteresis_observations: int = 3
    stalled_observations: int = 5
    compact_attempts: int = 2

    def __post_init__(self) -> None:
        if self.hysteresis_observations < 2 or self.stalled_observations < 2:
            raise ValueError("hysteresis windows must be at least 2 observations")
        if self.compact_attempts < 1:
            raise ValueError("compact_attempts must be at least 1")
        if self.quiet_period_seconds <= 0:
            raise ValueError("quiet_period_seconds must be positive")


@dataclass
class SessionRecord:
    session_id: str
    repo: str
    state_history: deque[SessionState]
    last_output_change_at: float
    last_poll_at: float
    confirmed_state: SessionState = "idle"
    stall_count: int = 0
    last_output_size: int = 0
    last_velocity: float = 0.0
    error_reason: str | None = None


class SessionMonitor:
    """Turns noisy session output into a stable lifecycle state.

    Raw classifications only become the confirmed state after the same raw
    state was seen in the last ``k`` polls. ``complete`` and ``error`` are
    absorbing and confirm immediately.
    """

    def __init__(
        self,
        driver: SessionDriver,
        *,
        tuning: MonitorTuning | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._driver = driver
        self._tuning = tuning or MonitorTuning()
        self._clock = clock
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._history_len = max(
            self._tuning.hysteresis_observations, self._tuning.stalled_observations
        )

    @property
    def tuning(self) -> MonitorTuning:
        return self._tuning

    def register(self, session_id: str, repo: str) -> None:
        now = self._clock()
        record = SessionRecord(
            session_id=session_id,
            repo=repo,
            state_history=deque(maxlen=self._history_len),
            last_output_change_at=now,
            last_poll_at=now,
        )
        with self._lock:
            self._records[session_id] = record

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def record(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            raise KeyError(f"Unknown session: {session_id}")
        return record

    def active_session_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._records)

    def classify_raw(self, session_id: str) -> SessionState:
        record = self.record(session_id)
        output = self._driver.read_output(session_id)
        now = self._clock()

        size = len(output)
        growth = max(0, size - record.last_output_size)
        elapsed = now - record.last_poll_at
        record.last_velocity = growth / elapsed if elapsed > 0 else float(growth)
        record.last_poll_at = now
        if size != record.last_output_size:
            record.last_output_change_at = now
        record.last_output_size = size

        lines = output.splitlines()
        result_state = _result_marker_state(lines[-_RESULT_SCAN_LINES:])
        if result_state is not None:
            return result_state
        tail = "\n".join(lines[-_ERROR_SCAN_LINES:])
        if any(pattern.search(tail) for pattern in _ERROR_PATTERNS):
            return "error"
        if growth == 0 and now - record.last_output_change_at >= self._tuning.quiet_period_seconds:
            return "stalled"
        if _looks_like_thinking(lines[-_THINKING_SCAN_LINES:]):
            return "thinking"
        if growth > 0 or record.last_velocity >= self._tuning.generating_velocity:
            return "generating"
        return "idle"

    def apply_hysteresis(self, session_id: str, raw_state: SessionState) -> SessionState:
        record = self.record(session_id)
        if record.confirmed_state in TERMINAL_SESSION_STATES:
            return record.confirmed_state
        if raw_state in TERMINAL_SESSION_STATES:
            record.state_history.appendleft(raw_state)
            record.confirmed_state = raw_state
            return raw_state

        record.state_history.appendleft(raw_state)
        needed = (
            self._tuning.stalled_observations
            if raw_state == "stalled"
            else self._tuning.hysteresis_observations
        )
        if len(record.state_history) < needed:
            return record.confirmed_state
        if any(record.state_history[index] != raw_state for index in range(needed)):
            return record.confirmed_state
        if raw_state == "stalled":
            # A confirmed stall needs a fresh full window before it can fire again.
            record.state_history.clear()
            return "stalled"
        record.confirmed_state = raw_state
        return raw_state

    def handle_stalled(self, session_id: str) -> RecoveryAction:
        record = self.record(session_id)
        record.stall_count += 1
        attempts = _INTERRUPT_ATTEMPTS + self._tuning.compact_attempts
        if record.stall_count > attempts:
            warn_event(
                LOGGER,
                "stall_recovery_exhausted",
                session_id=session_id,
                repo=record.repo,
                stall_count=record.stall_count,
            )
            raise StallRecoveryError(
                f"Session {session_id} still stalled after {attempts} recovery attempts"
            )
        action: RecoveryAction
        try:
            if record.stall_count <= _INTERRUPT_ATTEMPTS:
                action = "interrupt"
                self._driver.interrupt(session_id)
            else:
                action = "compact"
                self._driver.send(session_id, COMPACT_COMMAND)
        except DriverError as exc:
            warn_event(
                LOGGER,
                "stall_recovery_failed",
                session_id=session_id,
                stall_count=record.stall_count,
                error=str(exc),
            )
            raise StallRecoveryError(
                f"Stall recovery failed for session {session_id}: {exc}"
            ) from exc
        log_event(
            LOGGER,
            "stall_recovery_sent",
            session_id=session_id,
            repo=record.repo,
            stall_count=record.stall_count,
            action=action,
        )
        return action

    def poll(self, session_id: str) -> SessionObservation:
        record = self.record(session_id)
        if record.confirmed_state in TERMINAL_SESSION_STATES:
            return SessionObservation(
                session_id=session_id,
                raw_state=record.confirmed_state,
                state=record.confirmed_state,
                recovery="none",
                stall_count=record.stall_count,
            )

        raw_state = self.classify_raw(session_id)
        if raw_state != "stalled":
            record.stall_count = 0
        state = self.apply_hysteresis(session_id, raw_state)
        recovery: RecoveryAction = "none"
        if state == "stalled":
            recovery = self.handle_stalled(session_id)
        return SessionObservation(
            session_id=session_id,
            raw_state=raw_state,
            state=state,
            recovery=recovery,
            stall_count=record.stall_count,
        )

    def mark_error(self, session_id: str, reason: str) -> None:
        record = self.record(session_id)
        if record.confirmed_state in TERMINAL_SESSION_STATES:
            return
        record.confirmed_state = "error"
        record.error_reason = reason
        record.state_history.appendleft("error")
        log_event(LOGGER, "session_marked_error", session_id=session_id, reason=reason)


def _result_marker_state(lines: list[str]) -> SessionState | None:
    for line in reversed(lines):
        stripped = line.strip()
        if not stripped.startswith("{") or '"result"' not in stripped:
            continue
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or payload.get("type") != "result":
            continue
        subtype = payload.get("subtype")
        if payload.get("is_error") is True or (
            isinstance(subtype, str) and subtype.startswith("error")
        ):
            return "error"
        return "complete"
    return None


def _looks_like_thinking(lines: list[str]) -> bool:
    for line in lines:
        if any(ch in _SPINNER_GLYPHS for ch in line):
            return True
        if _THINKING_RE.search(line):
            return True
    return False
