from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import tomllib
from typing import cast

from fleetreview.models import RepoTarget, ReviewMode
from fleetreview.observability import warn_event


LOGGER = logging.getLogger("fleetreview.config")

DEFAULT_TARGET_PARALLELISM = 4
PARALLELISM_ENV_VAR = "REVIEW_PARALLEL"
STATE_DIR_ENV_VAR = "FLEETREVIEW_STATE_DIR"
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ReviewConfig:
    state_dir: Path
    target_parallelism: int = DEFAULT_TARGET_PARALLELISM
    mode: ReviewMode = "plan"
    poll_interval_seconds: float = 5.0
    session_timeout_seconds: int = 3600
    quiet_period_seconds: float = 30.0
    hysteresis_observations: int = 3
    stalled_observations: int = 5
    compact_attempts: int = 2
    governor_refresh_seconds: float = 30.0
    lock_timeout_seconds: float = 10.0
    skip_recent_days: int | None = None
    max_repos: int | None = None
    max_runtime_seconds: int | None = None
    repos: tuple[RepoTarget, ...] = ()

    @property
    def review_dir(self) -> Path:
        return self.state_dir / "review"

    @property
    def pipes_dir(self) -> Path:
        return self.state_dir / "pipes"


def default_state_dir(env: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if env is None else env
    explicit = environ.get(STATE_DIR_ENV_VAR, "").strip()
    if explicit:
        return Path(explicit).expanduser()
    xdg_state_home = environ.get("XDG_STATE_HOME", "").strip()
    if xdg_state_home:
        return Path(xdg_state_home).expanduser() / "fleetreview"
    return Path.home() / ".local" / "state" / "fleetreview"


def resolve_target_parallelism(
    env: Mapping[str, str] | None = None, *, default: int = DEFAULT_TARGET_PARALLELISM
) -> int:
    environ = os.environ if env is None else env
    raw = environ.get(PARALLELISM_ENV_VAR)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        warn_event(LOGGER, "invalid_parallelism_override", value=raw, default=default)
        return default
    if value < 1:
        warn_event(LOGGER, "invalid_parallelism_override", value=raw, default=default)
        return default
    return value


def default_config(env: Mapping[str, str] | None = None) -> ReviewConfig:
    return ReviewConfig(
        state_dir=default_state_dir(env),
        target_parallelism=resolve_target_parallelism(env),
    )


def load_config(path: Path, *, env: Mapping[str, str] | None = None) -> ReviewConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    review_data = _optional_table(data, "review") or {}
    repos_data = _optional_table(data, "repos") or {}

    state_dir_raw = _optional_str(review_data, "state_dir")
    state_dir = (
        Path(state_dir_raw).expanduser() if state_dir_raw is not None else default_state_dir(env)
    )
    configured_parallelism = _int_with_default(
        review_data, "target_parallelism", DEFAULT_TARGET_PARALLELISM
    )

    config = ReviewConfig(
        state_dir=state_dir,
        target_parallelism=resolve_target_parallelism(env, default=configured_parallelism),
        mode=_mode_with_default(review_data, "mode", "plan"),
        poll_interval_seconds=_number_with_default(review_data, "poll_interval_seconds", 5.0),
        session_timeout_seconds=_int_with_default(review_data, "session_timeout_seconds", 3600),
        quiet_period_seconds=_number_with_default(review_data, "quiet_period_seconds", 30.0),
        hysteresis_observations=_int_with_default(review_data, "hysteresis_observations", 3),
        stalled_observations=_int_with_default(review_data, "stalled_observations", 5),
        compact_attempts=_int_with_default(review_data, "compact_attempts", 2),
        governor_refresh_seconds=_number_with_default(
            review_data, "governor_refresh_seconds", 30.0
        ),
        lock_timeout_seconds=_number_with_default(review_data, "lock_timeout_seconds", 10.0),
        skip_recent_days=_optional_int(review_data, "skip_recent_days"),
        max_repos=_optional_int(review_data, "max_repos"),
        max_runtime_seconds=_optional_int(review_data, "max_runtime_seconds"),
        repos=_parse_repos(repos_data, base_dir=path.parent),
    )
    validate_config(config)
    return config


def validate_config(config: ReviewConfig) -> None:
    if config.target_parallelism < 1:
        raise ConfigError("review.target_parallelism must be >= 1")
    if config.poll_interval_seconds <= 0:
        raise ConfigError("review.poll_interval_seconds must be > 0")
    if config.session_timeout_seconds < 1:
        raise ConfigError("review.session_timeout_seconds must be >= 1")
    if config.quiet_period_seconds <= 0:
        raise ConfigError("review.quiet_period_seconds must be > 0")
    if config.hysteresis_observations < 2:
        raise ConfigError("review.hysteresis_observations must be >= 2")
    if config.stalled_observations < 2:
        raise ConfigError("review.stalled_observations must be >= 2")
    if config.compact_attempts < 1:
        raise ConfigError("review.compact_attempts must be >= 1")
    if config.governor_refresh_seconds <= 0:
        raise ConfigError("review.governor_refresh_seconds must be > 0")
    if config.lock_timeout_seconds <= 0:
        raise ConfigError("review.lock_timeout_seconds must be > 0")
    if config.lock_timeout_seconds >= config.session_timeout_seconds:
        raise ConfigError(
            "review.lock_timeout_seconds must be shorter than review.session_timeout_seconds"
        )
    for key, value in (
        ("skip_recent_days", config.skip_recent_days),
        ("max_repos", config.max_repos),
        ("max_runtime_seconds", config.max_runtime_seconds),
    ):
        if value is not None and value < 1:
            raise ConfigError(f"review.{key} must be >= 1 when provided")


def parse_repo_spec(raw: str, *, base_dir: Path | None = None) -> RepoTarget:
    repo, sep, worktree = raw.partition("=")
    repo = repo.strip()
    worktree = worktree.strip()
    if not sep or not worktree:
        raise ConfigError(f"Repo spec must look like owner/name=path, got {raw!r}")
    return RepoTarget(
        repo=_validate_repo_name(repo), worktree=_resolve_worktree(worktree, base_dir)
    )


def _parse_repos(data: dict[str, object], *, base_dir: Path) -> tuple[RepoTarget, ...]:
    repos: list[RepoTarget] = []
    for repo, raw_path in data.items():
        if not isinstance(raw_path, str) or not raw_path:
            raise ConfigError(f"[repos] {repo} must map to a non-empty worktree path")
        repos.append(
            RepoTarget(
                repo=_validate_repo_name(repo),
                worktree=_resolve_worktree(raw_path, base_dir),
            )
        )
    return tuple(repos)


def _validate_repo_name(repo: str) -> str:
    if not _REPO_NAME_RE.match(repo):
        raise ConfigError(f"Repo must be owner/name, got {repo!r}")
    return repo


def _resolve_worktree(raw: str, base_dir: Path | None) -> str:
    path = Path(raw).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return str(path)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    if key not in data:
        return None
    return _int_with_default(data, key, 0)


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _mode_with_default(data: dict[str, object], key: str, default: ReviewMode) -> ReviewMode:
    value = data.get(key, default)
    if value not in {"plan", "apply"}:
        raise ConfigError(f"{key} must be 'plan' or 'apply'")
    return cast(ReviewMode, value)
