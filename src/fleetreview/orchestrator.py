from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import secrets
import threading
import time

from fleetreview.checkpoint import ReviewStateStore
from fleetreview.config import ReviewConfig
from fleetreview.driver import PLAN_RELATIVE_PATH, DriverError, SessionDriver
from fleetreview.github_gateway import GitHubGateway
from fleetreview.governor import Governor
from fleetreview.ledger import ActionLedger, PlanValidationError, load_plan
from fleetreview.locking import review_run_lock
from fleetreview.models import RepoRunResult, RepoTarget, ReviewPlan
from fleetreview.observability import log_event, logging_repo_context, warn_event
from fleetreview.session_monitor import SessionMonitor, StallRecoveryError


LOGGER = logging.getLogger("fleetreview.orchestrator")

OUTCOME_COMPLETED = "completed"
OUTCOME_ERROR = "error"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_INTERRUPTED = "interrupted"
OUTCOME_PLAN_INVALID = "plan_invalid"
OUTCOME_ACTIONS_FAILED = "actions_failed"
OUTCOME_FAILED = "failed"

# Outcomes that were never persisted; the repo goes back on the pending list.
_RETRY_OUTCOMES = frozenset({OUTCOME_INTERRUPTED, OUTCOME_FAILED})


def generate_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}"


@dataclass(frozen=True)
class ReviewRunSummary:
    run_id: str
    status: str
    results: tuple[RepoRunResult, ...]
    skipped_repos: tuple[str, ...]
    pending_repos: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return self.status == "completed" and all(
            result.outcome == OUTCOME_COMPLETED for result in self.results
        )


@dataclass(frozen=True)
class _PlanOutcome:
    outcome: str
    items_fixed: int
    items_skipped: int
    actions_failed: int


class ReviewOrchestrator:
    def __init__(
        self,
        config: ReviewConfig,
        *,
        store: ReviewStateStore,
        ledger: ActionLedger,
        governor: Governor,
        driver: SessionDriver,
        monitor: SessionMonitor,
        github: GitHubGateway,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._ledger = ledger
        self._governor = governor
        self._driver = driver
        self._monitor = monitor
        self._github = github
        self._clock = clock
        self._stop = threading.Event()
        self._running: dict[str, Future[RepoRunResult]] = {}
        self._running_lock = threading.Lock()

    def request_stop(self) -> None:
        self._stop.set()

    def run(self, *, resume: bool = False) -> ReviewRunSummary:
        checkpoint = self._store.load_checkpoint() if resume else None
        run_id = checkpoint.run_id if checkpoint is not None else generate_run_id()
        repos = list(self._config.repos)
        completed: list[str] = []
        if checkpoint is not None:
            pending_names = set(checkpoint.pending_repos)
            repos = [target for target in repos if target.repo in pending_names]
            completed = list(checkpoint.completed_repos)
            log_event(
                LOGGER,
                "review_run_resumed",
                run_id=run_id,
                repos_completed=len(completed),
                repos_pending=len(repos),
            )
        elif resume:
            log_event(LOGGER, "review_resume_without_checkpoint", run_id=run_id)

        with review_run_lock(state_dir=self._config.state_dir, run_id=run_id):
            self._store.init(run_id, mode=self._config.mode)
            log_event(
                LOGGER,
                "review_run_started",
                run_id=run_id,
                mode=self._config.mode,
                repo_count=len(repos),
                target_parallelism=self._governor.target_parallelism(),
            )
            try:
                summary = self._run_queue(run_id=run_id, queue=repos, completed=completed)
            except KeyboardInterrupt:
                self._stop.set()
                self._store.save_checkpoint(
                    run_id=run_id,
                    mode=self._config.mode,
                    completed_repos=completed,
                    pending_repos=[
                        target.repo
                        for target in self._config.repos
                        if target.repo not in completed
                    ],
                )
                self._store.record_run_finished(run_id, "interrupted")
                warn_event(LOGGER, "review_run_interrupted", run_id=run_id)
                raise
            self._store.record_run_finished(run_id, summary.status)
        log_event(
            LOGGER,
            "review_run_finished",
            run_id=run_id,
            status=summary.status,
            repos_reviewed=len(summary.results),
            repos_skipped=len(summary.skipped_repos),
            repos_pending=len(summary.pending_repos),
        )
        return summary

    def _run_queue(
        self, *, run_id: str, queue: list[RepoTarget], completed: list[str]
    ) -> ReviewRunSummary:
        pending = list(queue)
        results: list[RepoRunResult] = []
        skipped: list[str] = []
        started_count = 0
        started_at = self._clock()
        budget_exhausted = False

        with ThreadPoolExecutor(
            max_workers=self._governor.target_parallelism(), thread_name_prefix="review"
        ) as pool:
            try:
                while True:
                    for result in self._reap_finished():
                        results.append(result)
                        if result.outcome not in _RETRY_OUTCOMES:
                            completed.append(result.repo)

                    if self._stop.is_set():
                        break

                    self._governor.adjust_parallelism()
                    while pending:
                        if self._budget_exhausted(started_count, started_at):
                            if not budget_exhausted:
                                warn_event(
                                    LOGGER,
                                    "review_budget_exhausted",
                                    run_id=run_id,
                                    repos_started=started_count,
                                    repos_pending=len(pending),
                                )
                            budget_exhausted = True
                            break
                        target = pending[0]
                        if self._is_recent(target.repo):
                            pending.pop(0)
                            skipped.append(target.repo)
                            completed.append(target.repo)
                            log_event(
                                LOGGER,
                                "repo_skipped",
                                repo=target.repo,
                                reason="recently_reviewed",
                            )
                            continue
                        with self._running_lock:
                            active = len(self._running)
                        if not self._governor.can_start_new_session(active):
                            break
                        pending.pop(0)
                        started_count += 1
                        fut = pool.submit(self._review_repo, target)
                        with self._running_lock:
                            self._running[target.repo] = fut
                        log_event(LOGGER, "repo_enqueued", repo=target.repo, active=active + 1)

                    with self._running_lock:
                        idle = not self._running
                    if idle and (not pending or budget_exhausted):
                        break
                    self._stop.wait(self._config.poll_interval_seconds)
            except BaseException:
                self._stop.set()
                raise
            finally:
                if self._stop.is_set():
                    pool.shutdown(wait=True, cancel_futures=True)

        for result in self._reap_finished():
            results.append(result)
            if result.outcome not in _RETRY_OUTCOMES:
                completed.append(result.repo)

        retry = [result.repo for result in results if result.outcome in _RETRY_OUTCOMES]
        remaining = retry + [target.repo for target in pending]
        if self._stop.is_set() or remaining:
            self._store.save_checkpoint(
                run_id=run_id,
                mode=self._config.mode,
                completed_repos=completed,
                pending_repos=remaining,
            )
            if self._stop.is_set():
                status = "interrupted"
            elif budget_exhausted:
                status = "budget_exhausted"
            else:
                status = "incomplete"
        else:
            self._store.clear_checkpoint()
            status = "completed"
        return ReviewRunSummary(
            run_id=run_id,
            status=status,
            results=tuple(results),
            skipped_repos=tuple(skipped),
            pending_repos=tuple(remaining),
        )

    def _budget_exhausted(self, started_count: int, started_at: float) -> bool:
        max_repos = self._config.max_repos
        if max_repos is not None and started_count >= max_repos:
            return True
        max_runtime = self._config.max_runtime_seconds
        if max_runtime is not None and self._clock() - started_at >= max_runtime:
            return True
        return False

    def _is_recent(self, repo: str) -> bool:
        days = self._config.skip_recent_days
        if days is None:
            return False
        return self._store.is_recently_reviewed(repo, days)

    def _reap_finished(self) -> list[RepoRunResult]:
        finished: list[RepoRunResult] = []
        with self._running_lock:
            done = [repo for repo, fut in self._running.items() if fut.done()]
            for repo in done:
                fut = self._running.pop(repo)
                if fut.cancelled():
                    finished.append(
                        RepoRunResult(
                            repo=repo,
                            outcome=OUTCOME_INTERRUPTED,
                            duration_seconds=0,
                            session_id=None,
                        )
                    )
                    continue
                try:
                    finished.append(fut.result())
                except Exception as exc:  # noqa: BLE001
                    self._governor.record_error()
                    warn_event(
                        LOGGER,
                        "repo_review_failed",
                        repo=repo,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    finished.append(
                        RepoRunResult(
                            repo=repo,
                            outcome=OUTCOME_FAILED,
                            duration_seconds=0,
                            session_id=None,
                        )
                    )
        return finished

    def _review_repo(self, target: RepoTarget) -> RepoRunResult:
        with logging_repo_context(target.repo):
            return self._review_repo_in_context(target)

    def _review_repo_in_context(self, target: RepoTarget) -> RepoRunResult:
        started = self._clock()
        try:
            session_id = self._driver.start(target.repo, Path(target.worktree))
        except DriverError as exc:
            self._governor.record_error()
            warn_event(LOGGER, "session_start_failed", repo=target.repo, error=str(exc))
            return self._finish(target, OUTCOME_ERROR, started, session_id=None)

        self._monitor.register(session_id, target.repo)
        log_event(LOGGER, "session_started", repo=target.repo, session_id=session_id)
        try:
            outcome = self._watch_session(target, session_id, started)
        finally:
            try:
                self._driver.stop(session_id)
            except DriverError as exc:
                warn_event(LOGGER, "session_stop_failed", session_id=session_id, error=str(exc))
            self._monitor.forget(session_id)

        if outcome != OUTCOME_COMPLETED:
            return self._finish(target, outcome, started, session_id=session_id)

        plan_outcome = self._process_plan(target)
        return self._finish(
            target,
            plan_outcome.outcome,
            started,
            session_id=session_id,
            items_fixed=plan_outcome.items_fixed,
            items_skipped=plan_outcome.items_skipped,
            actions_failed=plan_outcome.actions_failed,
        )

    def _watch_session(self, target: RepoTarget, session_id: str, started: float) -> str:
        while True:
            if self._stop.is_set():
                return OUTCOME_INTERRUPTED
            if self._clock() - started >= self._config.session_timeout_seconds:
                self._monitor.mark_error(session_id, "hard timeout")
                self._governor.record_error()
                warn_event(
                    LOGGER,
                    "session_timeout",
                    repo=target.repo,
                    session_id=session_id,
                    timeout_seconds=self._config.session_timeout_seconds,
                )
                return OUTCOME_TIMEOUT
            try:
                observation = self._monitor.poll(session_id)
                alive = self._driver.is_alive(session_id)
            except (StallRecoveryError, DriverError) as exc:
                self._monitor.mark_error(session_id, str(exc))
                self._governor.record_error()
                warn_event(
                    LOGGER,
                    "session_abandoned",
                    repo=target.repo,
                    session_id=session_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return OUTCOME_ERROR
            if observation.state == "complete":
                return OUTCOME_COMPLETED
            if observation.state == "error":
                self._governor.record_error()
                return OUTCOME_ERROR
            if not alive:
                self._monitor.mark_error(session_id, "session exited without a result")
                self._governor.record_error()
                warn_event(LOGGER, "session_exited", repo=target.repo, session_id=session_id)
                return OUTCOME_ERROR
            self._stop.wait(self._config.poll_interval_seconds)

    def _process_plan(self, target: RepoTarget) -> _PlanOutcome:
        plan_path = Path(target.worktree) / PLAN_RELATIVE_PATH
        if not plan_path.exists():
            log_event(LOGGER, "review_plan_missing", repo=target.repo, path=str(plan_path))
            return _PlanOutcome(OUTCOME_COMPLETED, 0, 0, 0)
        try:
            plan = load_plan(plan_path)
            if plan.repo != target.repo:
                raise PlanValidationError(
                    f"Plan repo {plan.repo!r} does not match {target.repo!r}"
                )
        except PlanValidationError as exc:
            warn_event(LOGGER, "review_plan_invalid", repo=target.repo, error=str(exc))
            return _PlanOutcome(OUTCOME_PLAN_INVALID, 0, 0, 0)

        items_fixed, items_skipped = self._record_items(target.repo, plan)
        if self._config.mode != "apply" or not plan.gh_actions:
            return _PlanOutcome(OUTCOME_COMPLETED, items_fixed, items_skipped, 0)
        summary = self._ledger.execute_all(
            target.repo, plan.gh_actions, self._github.for_repo(target.repo)
        )
        outcome = OUTCOME_COMPLETED if summary.ok else OUTCOME_ACTIONS_FAILED
        return _PlanOutcome(
            outcome, items_fixed, items_skipped, summary.failed + summary.unrecorded
        )

    def _record_items(self, repo: str, plan: ReviewPlan) -> tuple[int, int]:
        fixed = 0
        skipped = 0
        for item in plan.items:
            item_type = item.get("type")
            number = item.get("number")
            outcome = item.get("outcome")
            if not isinstance(item_type, str) or isinstance(number, bool):
                continue
            if not isinstance(number, int) or not isinstance(outcome, str):
                continue
            notes = item.get("notes")
            self._store.record_item_outcome(
                repo, item_type, number, outcome, notes if isinstance(notes, str) else ""
            )
            if outcome == "fixed":
                fixed += 1
            elif outcome == "skipped":
                skipped += 1
        return fixed, skipped

    def _finish(
        self,
        target: RepoTarget,
        outcome: str,
        started: float,
        *,
        session_id: str | None,
        items_fixed: int = 0,
        items_skipped: int = 0,
        actions_failed: int = 0,
    ) -> RepoRunResult:
        duration = int(self._clock() - started)
        if outcome != OUTCOME_INTERRUPTED:
            self._store.record_repo_outcome(
                target.repo, outcome, duration, items_fixed, items_skipped
            )
        log_event(
            LOGGER,
            "session_finished",
            repo=target.repo,
            session_id=session_id,
            outcome=outcome,
            duration_seconds=duration,
        )
        return RepoRunResult(
            repo=target.repo,
            outcome=outcome,
            duration_seconds=duration,
            session_id=session_id,
            actions_failed=actions_failed,
        )
