from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fleetreview import config
from fleetreview.config import ConfigError, ReviewConfig
from fleetreview.models import RepoTarget


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_reads_review_and_repos_tables(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "fleetreview.toml",
        """
[review]
state_dir = "~/state/fleetreview"
target_parallelism = 6
mode = "apply"
poll_interval_seconds = 2
session_timeout_seconds = 1800
quiet_period_seconds = 45.5
hysteresis_observations = 4
stalled_observations = 6
compact_attempts = 3
governor_refresh_seconds = 15
lock_timeout_seconds = 5
skip_recent_days = 7
max_repos = 20
max_runtime_seconds = 7200

[repos]
"octo/widgets" = "work/widgets"
"octo/gadgets" = "/abs/gadgets"
""".strip(),
    )

    loaded = config.load_config(cfg_path, env={})

    assert isinstance(loaded, ReviewConfig)
    assert loaded.state_dir.as_posix().endswith("/state/fleetreview")
    assert loaded.target_parallelism == 6
    assert loaded.mode == "apply"
    assert loaded.poll_interval_seconds == 2.0
    assert loaded.session_timeout_seconds == 1800
    assert loaded.quiet_period_seconds == 45.5
    assert loaded.hysteresis_observations == 4
    assert loaded.stalled_observations == 6
    assert loaded.compact_attempts == 3
    assert loaded.governor_refresh_seconds == 15.0
    assert loaded.lock_timeout_seconds == 5.0
    assert loaded.skip_recent_days == 7
    assert loaded.max_repos == 20
    assert loaded.max_runtime_seconds == 7200
    assert loaded.repos == (
        RepoTarget(repo="octo/widgets", worktree=str(tmp_path / "work/widgets")),
        RepoTarget(repo="octo/gadgets", worktree="/abs/gadgets"),
    )
    assert loaded.review_dir == loaded.state_dir / "review"
    assert loaded.pipes_dir == loaded.state_dir / "pipes"


def test_load_config_applies_defaults_for_empty_file(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "fleetreview.toml", "")

    loaded = config.load_config(cfg_path, env={"FLEETREVIEW_STATE_DIR": str(tmp_path / "s")})

    assert loaded.state_dir == tmp_path / "s"
    assert loaded.target_parallelism == 4
    assert loaded.mode == "plan"
    assert loaded.session_timeout_seconds == 3600
    assert loaded.quiet_period_seconds == 30.0
    assert loaded.hysteresis_observations == 3
    assert loaded.stalled_observations == 5
    assert loaded.compact_attempts == 2
    assert loaded.lock_timeout_seconds == 10.0
    assert loaded.skip_recent_days is None
    assert loaded.max_repos is None
    assert loaded.repos == ()


def test_parallelism_env_var_overrides_config_file(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "fleetreview.toml", "[review]\ntarget_parallelism = 2\n")

    loaded = config.load_config(cfg_path, env={"REVIEW_PARALLEL": "8"})

    assert loaded.target_parallelism == 8


def test_resolve_target_parallelism_defaults_and_overrides() -> None:
    assert config.resolve_target_parallelism({}) == 4
    assert config.resolve_target_parallelism({"REVIEW_PARALLEL": "8"}) == 8
    assert config.resolve_target_parallelism({"REVIEW_PARALLEL": " 3 "}) == 3
    assert config.resolve_target_parallelism({"REVIEW_PARALLEL": ""}) == 4


@pytest.mark.parametrize("raw", ["zero", "0", "-2", "1.5"])
def test_resolve_target_parallelism_invalid_values_fall_back_with_warning(
    raw: str, caplog: pytest.LogCaptureFixture
) -> None:
    logger = logging.getLogger("fleetreview")
    original_propagate = logger.propagate
    logger.propagate = True
    try:
        with caplog.at_level(logging.WARNING, logger="fleetreview.config"):
            assert config.resolve_target_parallelism({"REVIEW_PARALLEL": raw}) == 4
    finally:
        logger.propagate = original_propagate
    assert any("event=invalid_parallelism_override" in rec.message for rec in caplog.records)


def test_default_state_dir_resolution_order(tmp_path: Path) -> None:
    assert config.default_state_dir(
        {"FLEETREVIEW_STATE_DIR": str(tmp_path / "explicit"), "XDG_STATE_HOME": "/xdg"}
    ) == (tmp_path / "explicit")
    assert config.default_state_dir({"XDG_STATE_HOME": str(tmp_path)}) == (
        tmp_path / "fleetreview"
    )
    assert config.default_state_dir({}) == Path.home() / ".local" / "state" / "fleetreview"


def test_default_config_uses_environment(tmp_path: Path) -> None:
    loaded = config.default_config(
        {"FLEETREVIEW_STATE_DIR": str(tmp_path), "REVIEW_PARALLEL": "2"}
    )

    assert loaded.state_dir == tmp_path
    assert loaded.target_parallelism == 2
    assert loaded.repos == ()


def test_parse_repo_spec(tmp_path: Path) -> None:
    assert config.parse_repo_spec("octo/widgets=/w") == RepoTarget("octo/widgets", "/w")
    assert config.parse_repo_spec("octo/widgets=rel", base_dir=tmp_path) == RepoTarget(
        "octo/widgets", str(tmp_path / "rel")
    )
    with pytest.raises(ConfigError, match="owner/name=path"):
        config.parse_repo_spec("octo/widgets")
    with pytest.raises(ConfigError, match="owner/name"):
        config.parse_repo_spec("widgets=/w")


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("[review]\ntarget_parallelism = 0\n", "target_parallelism must be >= 1"),
        ("[review]\ntarget_parallelism = true\n", "target_parallelism must be an integer"),
        ("[review]\nmode = \"yolo\"\n", "mode must be 'plan' or 'apply'"),
        ("[review]\nhysteresis_observations = 1\n", "hysteresis_observations must be >= 2"),
        ("[review]\nstalled_observations = 1\n", "stalled_observations must be >= 2"),
        ("[review]\ncompact_attempts = 0\n", "compact_attempts must be >= 1"),
        ("[review]\nquiet_period_seconds = \"soon\"\n", "quiet_period_seconds must be a number"),
        (
            "[review]\nsession_timeout_seconds = 5\nlock_timeout_seconds = 10\n",
            "lock_timeout_seconds must be shorter",
        ),
        ("[review]\nmax_repos = 0\n", "max_repos must be >= 1"),
        ("[review]\nstate_dir = \"\"\n", "state_dir must be a non-empty string"),
        ("review = 3\n", r"\[review\] must be a TOML table"),
        ("[repos]\n\"octo/widgets\" = 3\n", "must map to a non-empty worktree path"),
        ("[repos]\n\"not-a-repo\" = \"/w\"\n", "Repo must be owner/name"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "fleetreview.toml", body)

    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path, env={})


def test_validate_config_accepts_defaults(tmp_path: Path) -> None:
    config.validate_config(ReviewConfig(state_dir=tmp_path))
