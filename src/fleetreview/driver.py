from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
import logging
import re
import secrets
import shlex

from fleetreview.observability import log_event
from fleetreview.shell import CommandError, run


LOGGER = logging.getLogger("fleetreview.driver")
SESSION_PREFIX = "ru"
PLAN_RELATIVE_PATH = ".fleetreview/review-plan.json"
DEFAULT_REVIEW_PROMPT = (
    "Review the open issues and pull requests of this repository. Do not push or "
    "comment yourself. Write your findings as a JSON review plan to "
    f"{PLAN_RELATIVE_PATH} with keys schema_version, repo, items, gh_actions and git."
)
DEFAULT_AGENT_COMMAND: tuple[str, ...] = (
    "claude",
    "-p",
    DEFAULT_REVIEW_PROMPT,
    "--output-format",
    "stream-json",
    "--verbose",
)
_SLUG_RE = re.compile(r"[^A-Za-z0-9]+")
_MAX_SLUG_LEN = 40


class DriverError(RuntimeError):
    """A session could not be spawned, signalled or inspected."""


class SessionDriver(ABC):
    @abstractmethod
    def start(self, repo: str, cwd: Path) -> str:
        """Spawn an agent session for ``repo`` in ``cwd`` and return its id."""

    @abstractmethod
    def send(self, session_id: str, text: str) -> None:
        """Type ``text`` into the session followed by Enter."""

    @abstractmethod
    def interrupt(self, session_id: str) -> None:
        """Interrupt whatever the agent is doing without ending the session."""

    @abstractmethod
    def stop(self, session_id: str) -> None:
        """Terminate the session. Stopping an unknown session is not an error."""

    @abstractmethod
    def read_output(self, session_id: str) -> str:
        """Return everything the session has printed so far."""

    @abstractmethod
    def is_alive(self, session_id: str) -> bool:
        """Whether the session process is still running."""


def session_name_for(repo: str, suffix: str | None = None) -> str:
    slug = _SLUG_RE.sub("-", repo).strip("-").lower()[:_MAX_SLUG_LEN] or "repo"
    return f"{SESSION_PREFIX}-{slug}-{suffix or secrets.token_hex(3)}"


class TmuxSessionDriver(SessionDriver):
    """Local backend: one detached tmux session per review.

    Pane output is mirrored into ``<pipes_dir>/<session>.pipe.log`` so the
    monitor and governor can read it without attaching.
    """

    def __init__(
        self,
        pipes_dir: Path,
        *,
        agent_command: tuple[str, ...] = DEFAULT_AGENT_COMMAND,
        tmux_binary: str = "tmux",
    ) -> None:
        self._pipes_dir = pipes_dir
        self._agent_command = agent_command
        self._tmux = tmux_binary

    def pipe_log_path(self, session_id: str) -> Path:
        return self._pipes_dir / f"{session_id}.pipe.log"

    def start(self, repo: str, cwd: Path) -> str:
        session_id = session_name_for(repo)
        self._pipes_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.pipe_log_path(session_id)
        log_path.touch()
        # The pane starts as a bare shell so the pipe is attached before the agent
        # prints anything; ``exec`` then ends the session when the agent exits.
        self._tmux_call(
            ["new-session", "-d", "-s", session_id, "-c", str(cwd)],
            action="start",
            session_id=session_id,
        )
        try:
            self._tmux_call(
                ["pipe-pane", "-o", "-t", session_id, f"cat >> {shlex.quote(str(log_path))}"],
                action="pipe",
                session_id=session_id,
            )
            self.send(session_id, f"exec {shlex.join(self._agent_command)}")
        except DriverError:
            self.stop(session_id)
            raise
        log_event(LOGGER, "tmux_session_started", session_id=session_id, repo=repo, cwd=str(cwd))
        return session_id

    def send(self, session_id: str, text: str) -> None:
        self._tmux_call(
            ["send-keys", "-t", session_id, "-l", text], action="send", session_id=session_id
        )
        self._tmux_call(
            ["send-keys", "-t", session_id, "Enter"], action="send", session_id=session_id
        )

    def interrupt(self, session_id: str) -> None:
        self._tmux_call(
            ["send-keys", "-t", session_id, "C-c"], action="interrupt", session_id=session_id
        )

    def stop(self, session_id: str) -> None:
        if not self.is_alive(session_id):
            return
        self._tmux_call(["kill-session", "-t", session_id], action="stop", session_id=session_id)
        log_event(LOGGER, "tmux_session_stopped", session_id=session_id)

    def read_output(self, session_id: str) -> str:
        try:
            return self.pipe_log_path(session_id).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def is_alive(self, session_id: str) -> bool:
        try:
            run([self._tmux, "has-session", "-t", session_id])
        except CommandError:
            return False
        return True

    def _tmux_call(self, args: list[str], *, action: str, session_id: str) -> None:
        try:
            run([self._tmux, *args])
        except CommandError as exc:
            raise DriverError(f"tmux {action} failed for session {session_id}: {exc}") from exc
