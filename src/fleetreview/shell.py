from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
import logging
import subprocess


class CommandError(RuntimeError):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


LOGGER = logging.getLogger("fleetreview.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
            env=dict(env) if env is not None else None,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            " ".join(argv),
            timeout_seconds,
        )
        raise CommandError(
            f"Command timed out after {timeout_seconds}s\ncmd: {' '.join(argv)}"
        ) from exc
    except FileNotFoundError as exc:
        LOGGER.error("event=command_not_found command=%s", argv[0] if argv else "<empty>")
        raise CommandError(f"Command not found: {argv[0] if argv else '<empty>'}") from exc

    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            returncode=proc.returncode,
            stderr=proc.stderr,
        )
    return proc.stdout
