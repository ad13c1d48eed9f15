from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path
import re
import threading
import time
from typing import Protocol

from fleetreview.models import GovernorStatus, RateLimitSnapshot
from fleetreview.observability import log_event, warn_event


LOGGER = logging.getLogger("fleetreview.governor")

QUOTA_CRITICAL = 500
QUOTA_LOW = 1000
SIGNAL_MAX_AGE_SECONDS = 300.0
_SIGNAL_TAIL_BYTES = 64 * 1024
_MODEL_EXHAUSTION_RE = re.compile(
    r"\b429\b|rate.?limit|overloaded|quota.?exceeded", re.IGNORECASE
)


class RateLimitSource(Protocol):
    def query_rate_limit(self) -> RateLimitSnapshot: ...


@dataclass(frozen=True)
class GovernorTuning:
    model_backoff_seconds: float = 300.0
    error_window_seconds: float = 300.0
    error_threshold: int = 5


def derive_parallelism(
    *,
    target: int,
    github_remaining: int,
    model_in_backoff: bool,
    circuit_breaker_open: bool,
) -> int:
    if circuit_breaker_open:
        return 0
    if model_in_backoff:
        return 1
    if github_remaining < QUOTA_CRITICAL:
        return 1
    if github_remaining < QUOTA_LOW:
        return max(1, target // 2)
    return target


class Governor:
    """Admission control for review sessions.

    Every mutation goes through ``self._lock``; ``effective_parallelism`` is
    only ever recomputed from the other fields by ``_derive_locked``.
    """

    def __init__(
        self,
        *,
        target_parallelism: int,
        rate_limits: RateLimitSource | None = None,
        signal_log_dir: Path | None = None,
        tuning: GovernorTuning | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if target_parallelism < 1:
            raise ValueError("target_parallelism must be >= 1")
        self._target = target_parallelism
        self._rate_limits = rate_limits
        self._signal_log_dir = signal_log_dir
        self._tuning = tuning or GovernorTuning()
        self._clock = clock
        self._lock = threading.Lock()

        # Unknown quota is treated as healthy until the first refresh.
        self._github_remaining = QUOTA_LOW
        self._github_reset = 0
        self._model_in_backoff = False
        self._model_backoff_until = 0.0
        self._circuit_breaker_open = False
        self._error_count_window = 0
        self._window_start = 0.0
        self._effective_parallelism = target_parallelism

    def target_parallelism(self) -> int:
        return self._target

    def refresh(self) -> None:
        snapshot = self._query_rate_limit()
        signal_found = self._scan_for_model_exhaustion()
        with self._lock:
            now = self._clock()
            if snapshot is not None:
                self._github_remaining = snapshot.remaining
                self._github_reset = snapshot.reset_at
            if signal_found:
                if not self._model_in_backoff:
                    warn_event(
                        LOGGER,
                        "model_backoff_started",
                        backoff_seconds=self._tuning.model_backoff_seconds,
                    )
                self._model_in_backoff = True
                self._model_backoff_until = now + self._tuning.model_backoff_seconds
            elif self._model_in_backoff and self._model_backoff_until <= now:
                self._model_in_backoff = False
                log_event(LOGGER, "model_backoff_cleared")
            self._derive_locked(now)

    def adjust_parallelism(self) -> int:
        with self._lock:
            self._derive_locked(self._clock())
            return self._effective_parallelism

    def can_start_new_session(self, active_count: int) -> bool:
        with self._lock:
            return (
                not self._circuit_breaker_open
                and not self._model_in_backoff
                and active_count < self._effective_parallelism
            )

    def record_error(self) -> None:
        with self._lock:
            now = self._clock()
            self._maintain_window_locked(now)
            self._error_count_window += 1
            log_event(
                LOGGER,
                "governor_error_recorded",
                error_count=self._error_count_window,
                threshold=self._tuning.error_threshold,
            )
            self._derive_locked(now)

    def status(self) -> GovernorStatus:
        with self._lock:
            return GovernorStatus(
                github_remaining=self._github_remaining,
                github_reset=self._github_reset,
                model_in_backoff=self._model_in_backoff,
                model_backoff_until=int(self._model_backoff_until),
                effective_parallelism=self._effective_parallelism,
                target_parallelism=self._target,
                circuit_breaker_open=self._circuit_breaker_open,
                error_count=self._error_count_window,
            )

    def _derive_locked(self, now: float) -> None:
        self._maintain_window_locked(now)
        if (
            not self._circuit_breaker_open
            and self._error_count_window >= self._tuning.error_threshold
        ):
            self._circuit_breaker_open = True
            warn_event(
                LOGGER,
                "circuit_breaker_opened",
                error_count=self._error_count_window,
                window_seconds=self._tuning.error_window_seconds,
            )
        previous = self._effective_parallelism
        self._effective_parallelism = derive_parallelism(
            target=self._target,
            github_remaining=self._github_remaining,
            model_in_backoff=self._model_in_backoff,
            circuit_breaker_open=self._circuit_breaker_open,
        )
        if previous != self._effective_parallelism:
            log_event(
                LOGGER,
                "parallelism_adjusted",
                previous=previous,
                effective=self._effective_parallelism,
                github_remaining=self._github_remaining,
            )

    def _maintain_window_locked(self, now: float) -> None:
        if self._window_start == 0:
            self._window_start = now
            return
        if now - self._window_start < self._tuning.error_window_seconds:
            return
        self._error_count_window = 0
        self._window_start = now
        if self._circuit_breaker_open:
            self._circuit_breaker_open = False
            log_event(LOGGER, "circuit_breaker_closed")

    def _query_rate_limit(self) -> RateLimitSnapshot | None:
        if self._rate_limits is None:
            return None
        try:
            return self._rate_limits.query_rate_limit()
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "rate_limit_refresh_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def _scan_for_model_exhaustion(self) -> bool:
        if self._signal_log_dir is None:
            return False
        try:
            candidates = list(self._signal_log_dir.glob("*.log"))
        except OSError as exc:
            warn_event(LOGGER, "model_signal_scan_failed", error=str(exc))
            return False
        cutoff = self._clock() - SIGNAL_MAX_AGE_SECONDS
        for path in candidates:
            try:
                if path.stat().st_mtime < cutoff:
                    continue
                if _tail_has_exhaustion_signal(path):
                    log_event(LOGGER, "model_exhaustion_signal_found", path=str(path))
                    return True
            except OSError as exc:
                warn_event(LOGGER, "model_signal_scan_failed", path=str(path), error=str(exc))
        return False


class GovernorRefresher:
    """Calls ``Governor.refresh`` on a daemon thread until stopped."""

    def __init__(self, governor: Governor, *, interval_seconds: float) -> None:
        self._governor = governor
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="governor-refresh", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout)

    def __enter__(self) -> GovernorRefresher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._governor.refresh()
            except Exception as exc:  # noqa: BLE001
                warn_event(LOGGER, "governor_refresh_failed", error_type=type(exc).__name__)
            self._stop.wait(self._interval_seconds)


def _tail_has_exhaustion_signal(path: Path) -> bool:
    with path.open("rb") as fh:
        fh.seek(0, 2)
        size = fh.tell()
        fh.seek(max(0, size - _SIGNAL_TAIL_BYTES))
        tail = fh.read().decode("utf-8", errors="replace")
    return _MODEL_EXHAUSTION_RE.search(tail) is not None
