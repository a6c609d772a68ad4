from __future__ import annotations

from pathlib import Path

import pytest

from helicone_integrator.config import DEFAULT_RETRY, ConfigError, load_config
from helicone_integrator.execution_policy import RetryPolicy


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_minimal_applies_defaults(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "helicone-integrator.toml",
        """
[runtime]
base_dir = "~/tmp/helicone"
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.base_dir == Path("~/tmp/helicone").expanduser()
    assert cfg.runtime.state_db_path == cfg.runtime.base_dir / "state.db"
    assert cfg.runtime.workspaces_dir == cfg.runtime.base_dir / "workspaces"
    assert cfg.runtime.worker_count == 4
    assert cfg.runtime.poll_interval_seconds == 5
    assert cfg.runtime.review_timeout_seconds == 7 * 24 * 60 * 60
    assert cfg.runtime.max_attempts == 3
    assert cfg.integration.branch_prefix == "helicone-integration"
    assert cfg.integration.task == "Add Helicone integration"
    assert cfg.integration.prompt_path is None
    assert cfg.codex.enabled is True
    assert cfg.codex.model is None
    assert cfg.codex.extra_args == ()
    assert cfg.codex.timeout_seconds == 1200
    assert cfg.retry == DEFAULT_RETRY


def test_load_config_full(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "helicone-integrator.toml",
        """
[runtime]
base_dir = "/var/lib/helicone"
worker_count = 2
poll_interval_seconds = 10
review_timeout_seconds = 3600
max_attempts = 5

[integration]
branch_prefix = "helicone"
task = "Wire up Helicone"
git_author_name = "Bot"
git_author_email = "bot@example.com"
prompt_path = "~/prompts/helicone.md"

[codex]
enabled = false
model = "gpt-5-codex"
sandbox = "workspace-write"
profile = "ci"
extra_args = ["--full-auto"]
timeout_seconds = 300

[retry.default]
max_attempts = 5
initial_interval_seconds = 1
max_interval_seconds = 8.5

[retry.agent]
max_attempts = 1
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime.base_dir == Path("/var/lib/helicone")
    assert cfg.runtime.worker_count == 2
    assert cfg.runtime.review_timeout_seconds == 3600
    assert cfg.runtime.max_attempts == 5
    assert cfg.integration.branch_prefix == "helicone"
    assert cfg.integration.git_author_email == "bot@example.com"
    assert cfg.integration.prompt_path == Path("~/prompts/helicone.md").expanduser()
    assert cfg.codex.enabled is False
    assert cfg.codex.extra_args == ("--full-auto",)
    assert cfg.codex.timeout_seconds == 300
    assert cfg.retry.default == RetryPolicy(
        max_attempts=5, initial_interval_seconds=1.0, max_interval_seconds=8.5
    )
    assert cfg.retry.agent.max_attempts == 1
    assert cfg.retry.agent.initial_interval_seconds == DEFAULT_RETRY.agent.initial_interval_seconds


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("", r"\[runtime\] is required"),
        ("runtime = 3", r"\[runtime\] is required"),
        ('[runtime]\nbase_dir = ""', "base_dir is required"),
        ('[runtime]\nbase_dir = "/x"\nworker_count = 0', "worker_count must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\nworker_count = true', "worker_count must be an integer"),
        ('[runtime]\nbase_dir = "/x"\nmax_attempts = 0', "max_attempts must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\nreview_timeout_seconds = 0', "review_timeout_seconds"),
        (
            '[runtime]\nbase_dir = "/x"\n[integration]\nbranch_prefix = "has space"',
            "must not contain whitespace",
        ),
        ('[runtime]\nbase_dir = "/x"\n[codex]\nenabled = "yes"', "enabled must be a boolean"),
        ('[runtime]\nbase_dir = "/x"\n[codex]\nextra_args = [1]', "extra_args must be a list"),
        ('[runtime]\nbase_dir = "/x"\n[codex]\ntimeout_seconds = 0', "timeout_seconds"),
        ('codex = 1\n[runtime]\nbase_dir = "/x"', r"\[codex\] must be a TOML table"),
        (
            '[runtime]\nbase_dir = "/x"\n[retry.default]\nmax_attempts = 0',
            r"retry.default.max_attempts",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[retry.agent]\ninitial_interval_seconds = 10\nmax_interval_seconds = 1',
            "max_interval_seconds must be >= initial_interval_seconds",
        ),
        (
            '[runtime]\nbase_dir = "/x"\n[retry.agent]\nbackoff_coefficient = 0.5',
            "backoff_coefficient must be >= 1",
        ),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "bad.toml", body)
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)
