from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json
import logging
import time
from typing import cast

from fleetreview.ledger import PlanValidationError, parse_target
from fleetreview.models import ActionResult, RateLimitSnapshot
from fleetreview.observability import log_event, warn_event
from fleetreview.shell import CommandError, run


LOGGER = logging.getLogger("fleetreview.github_gateway")
_GH_TIMEOUT_SECONDS = 60.0


class GitHubRateLimitError(RuntimeError):
    """Rate-limit telemetry could not be read; callers keep their last snapshot."""


@dataclass(frozen=True)
class GitHubGateway:
    """Thin wrapper over the ``gh`` CLI.

    ``repo_full_name`` is only needed for ``execute``; rate-limit queries are
    account-wide.
    """

    repo_full_name: str | None = None
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0

    def for_repo(self, repo_full_name: str) -> GitHubGateway:
        return GitHubGateway(
            repo_full_name=repo_full_name,
            max_attempts=self.max_attempts,
            initial_backoff_seconds=self.initial_backoff_seconds,
        )

    def execute(self, op: str, target: str, args: Mapping[str, object]) -> ActionResult:
        if self.repo_full_name is None:
            raise ValueError("GitHubGateway.execute requires repo_full_name")
        try:
            kind, number = parse_target(target)
            argv, stdin_text = self._command_for(op, kind, number, args)
        except (PlanValidationError, ValueError) as exc:
            return ActionResult(ok=False, message=str(exc))

        try:
            output = run(argv, input_text=stdin_text, timeout_seconds=_GH_TIMEOUT_SECONDS)
        except CommandError as exc:
            warn_event(
                LOGGER,
                "github_action_failed",
                repo_full_name=self.repo_full_name,
                op=op,
                target=target,
                returncode=exc.returncode,
                stderr=exc.stderr,
            )
            return ActionResult(ok=False, message=(exc.stderr.strip() or str(exc)))
        log_event(
            LOGGER,
            "github_action_executed",
            repo_full_name=self.repo_full_name,
            op=op,
            target=target,
        )
        return ActionResult(ok=True, message=output.strip())

    def query_rate_limit(self) -> RateLimitSnapshot:
        delay = self.initial_backoff_seconds
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = run(["gh", "api", "rate_limit"], timeout_seconds=_GH_TIMEOUT_SECONDS)
                return _parse_rate_limit(raw)
            except (CommandError, ValueError) as exc:
                last_error = exc
                log_event(
                    LOGGER,
                    "github_rate_limit_query_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error_type=type(exc).__name__,
                )
                if attempt < self.max_attempts:
                    time.sleep(delay)
                    delay *= 2
        raise GitHubRateLimitError(
            f"Unable to read GitHub rate limit after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    def _command_for(
        self, op: str, kind: str, number: int, args: Mapping[str, object]
    ) -> tuple[list[str], str | None]:
        repo = cast(str, self.repo_full_name)
        base = ["gh", kind, "", str(number), "-R", repo]
        if op == "comment":
            body = args.get("body")
            if not isinstance(body, str):
                raise ValueError("comment action requires a string body")
            base[2] = "comment"
            return [*base, "--body-file", "-"], body
        if op == "close":
            base[2] = "close"
            reason = args.get("reason")
            if kind == "issue" and isinstance(reason, str) and reason:
                return [*base, "--reason", reason], None
            return base, None
        if op == "label":
            labels = args.get("labels")
            if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
                raise ValueError("label action requires a list of label names")
            base[2] = "edit"
            return [*base, "--add-label", ",".join(labels)], None
        raise ValueError(f"Unsupported action op: {op!r}")


def _parse_rate_limit(raw: str) -> RateLimitSnapshot:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"rate_limit response is not JSON: {exc}") from exc
    resources = _as_object_dict(payload.get("resources")) if isinstance(payload, dict) else None
    core = _as_object_dict(resources.get("core")) if resources is not None else None
    if core is None:
        raise ValueError("rate_limit response has no resources.core section")
    return RateLimitSnapshot(
        remaining=_as_int(core.get("remaining"), field="remaining"),
        reset_at=_as_int(core.get("reset"), field="reset"),
    )


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise ValueError(f"Unexpected GitHub response type for {field}")
