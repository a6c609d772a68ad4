from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from helicone_integrator.execution_policy import RetryPolicy


_SEVEN_DAYS_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int = 4
    poll_interval_seconds: int = 5
    review_timeout_seconds: int = _SEVEN_DAYS_SECONDS
    max_attempts: int = 3

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"

    @property
    def workspaces_dir(self) -> Path:
        return self.base_dir / "workspaces"


@dataclass(frozen=True)
class IntegrationConfig:
    branch_prefix: str = "helicone-integration"
    task: str = "Add Helicone integration"
    git_author_name: str = "Helicone Integration Bot"
    git_author_email: str = "noreply@helicone.ai"
    prompt_path: Path | None = None


@dataclass(frozen=True)
class CodexConfig:
    enabled: bool
    model: str | None
    sandbox: str | None
    profile: str | None
    extra_args: tuple[str, ...]
    timeout_seconds: int = 20 * 60


@dataclass(frozen=True)
class RetryConfig:
    default: RetryPolicy
    agent: RetryPolicy


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    integration: IntegrationConfig
    codex: CodexConfig
    retry: RetryConfig


class ConfigError(ValueError):
    pass


DEFAULT_RETRY = RetryConfig(
    default=RetryPolicy(
        max_attempts=3,
        initial_interval_seconds=30.0,
        max_interval_seconds=300.0,
    ),
    agent=RetryPolicy(
        max_attempts=2,
        initial_interval_seconds=30.0,
        max_interval_seconds=300.0,
    ),
)


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    integration_data = _optional_table(data, "integration") or {}
    codex_data = _optional_table(data, "codex") or {}
    retry_data = _optional_table(data, "retry") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 5),
        review_timeout_seconds=_int_with_default(
            runtime_data, "review_timeout_seconds", _SEVEN_DAYS_SECONDS
        ),
        max_attempts=_int_with_default(runtime_data, "max_attempts", 3),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.poll_interval_seconds < 1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 1")
    if runtime.review_timeout_seconds < 1:
        raise ConfigError("runtime.review_timeout_seconds must be >= 1")
    if runtime.max_attempts < 1:
        raise ConfigError("runtime.max_attempts must be >= 1")

    integration = IntegrationConfig(
        branch_prefix=_str_with_default(integration_data, "branch_prefix", "helicone-integration"),
        task=_str_with_default(integration_data, "task", "Add Helicone integration"),
        git_author_name=_str_with_default(
            integration_data, "git_author_name", "Helicone Integration Bot"
        ),
        git_author_email=_str_with_default(
            integration_data, "git_author_email", "noreply@helicone.ai"
        ),
        prompt_path=_optional_path(integration_data, "prompt_path"),
    )
    if any(ch.isspace() for ch in integration.branch_prefix):
        raise ConfigError("integration.branch_prefix must not contain whitespace")

    codex = CodexConfig(
        enabled=_bool_with_default(codex_data, "enabled", True),
        model=_optional_str(codex_data, "model"),
        sandbox=_optional_str(codex_data, "sandbox"),
        profile=_optional_str(codex_data, "profile"),
        extra_args=_tuple_of_str(codex_data, "extra_args"),
        timeout_seconds=_int_with_default(codex_data, "timeout_seconds", 20 * 60),
    )
    if codex.timeout_seconds < 1:
        raise ConfigError("codex.timeout_seconds must be >= 1")

    retry = RetryConfig(
        default=_parse_retry_policy(retry_data, "default", DEFAULT_RETRY.default),
        agent=_parse_retry_policy(retry_data, "agent", DEFAULT_RETRY.agent),
    )

    return AppConfig(runtime=runtime, integration=integration, codex=codex, retry=retry)


def _parse_retry_policy(
    retry_data: dict[str, object], key: str, defaults: RetryPolicy
) -> RetryPolicy:
    table = _optional_table(retry_data, key)
    if table is None:
        return defaults
    policy = RetryPolicy(
        max_attempts=_int_with_default(table, "max_attempts", defaults.max_attempts),
        initial_interval_seconds=_float_with_default(
            table, "initial_interval_seconds", defaults.initial_interval_seconds
        ),
        max_interval_seconds=_float_with_default(
            table, "max_interval_seconds", defaults.max_interval_seconds
        ),
        backoff_coefficient=_float_with_default(
            table, "backoff_coefficient", defaults.backoff_coefficient
        ),
    )
    if policy.max_attempts < 1:
        raise ConfigError(f"retry.{key}.max_attempts must be >= 1")
    if policy.initial_interval_seconds < 0 or policy.max_interval_seconds < 0:
        raise ConfigError(f"retry.{key} intervals must be >= 0")
    if policy.max_interval_seconds < policy.initial_interval_seconds:
        raise ConfigError(f"retry.{key}.max_interval_seconds must be >= initial_interval_seconds")
    if policy.backoff_coefficient < 1:
        raise ConfigError(f"retry.{key}.backoff_coefficient must be >= 1")
    return policy


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
