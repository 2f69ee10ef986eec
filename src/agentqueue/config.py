from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: int
    session_poll_interval_seconds: int = 300
    session_max_duration_seconds: int = 7200
    dispatch_lock_timeout_seconds: int = 60
    github_timeout_seconds: int = 10
    max_ci_failure_rounds: int = 3


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str = "main"
    work_label: str = "agent:queue"
    in_progress_label: str = "agent:in-progress"
    agent_pr_label: str = "agent-authored"
    blocked_label: str = "agent:blocked"
    tracking_doc_path: str | None = None
    pre_pr_checks: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AgentConfig:
    api_base_url: str = "https://jules.googleapis.com/v1alpha"
    api_key_env: str = "JULES_API_KEY"
    timeout_seconds: int = 30
    require_plan_approval: bool = False
    source: str | None = None

    def source_for(self, repo: RepoConfig) -> str:
        if self.source:
            return self.source
        return f"sources/github/{repo.owner}/{repo.name}"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    agent: AgentConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    agent_data = _optional_table(data, "agent") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_require_int(runtime_data, "poll_interval_seconds"),
        session_poll_interval_seconds=_int_with_default(
            runtime_data, "session_poll_interval_seconds", 300
        ),
        session_max_duration_seconds=_int_with_default(
            runtime_data, "session_max_duration_seconds", 7200
        ),
        dispatch_lock_timeout_seconds=_int_with_default(
            runtime_data, "dispatch_lock_timeout_seconds", 60
        ),
        github_timeout_seconds=_int_with_default(runtime_data, "github_timeout_seconds", 10),
        max_ci_failure_rounds=_int_with_default(runtime_data, "max_ci_failure_rounds", 3),
    )

    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.session_poll_interval_seconds < 5:
        raise ConfigError("runtime.session_poll_interval_seconds must be >= 5")
    if runtime.session_max_duration_seconds < runtime.session_poll_interval_seconds:
        raise ConfigError(
            "runtime.session_max_duration_seconds must be >= "
            "runtime.session_poll_interval_seconds"
        )
    if runtime.dispatch_lock_timeout_seconds < 1:
        raise ConfigError("runtime.dispatch_lock_timeout_seconds must be >= 1")
    if runtime.github_timeout_seconds < 1:
        raise ConfigError("runtime.github_timeout_seconds must be >= 1")
    if runtime.max_ci_failure_rounds < 1:
        raise ConfigError("runtime.max_ci_failure_rounds must be >= 1")

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        default_branch=_str_with_default(repo_data, "default_branch", "main"),
        work_label=_str_with_default(repo_data, "work_label", "agent:queue"),
        in_progress_label=_str_with_default(repo_data, "in_progress_label", "agent:in-progress"),
        agent_pr_label=_str_with_default(repo_data, "agent_pr_label", "agent-authored"),
        blocked_label=_str_with_default(repo_data, "blocked_label", "agent:blocked"),
        tracking_doc_path=_optional_str(repo_data, "tracking_doc_path"),
        pre_pr_checks=_optional_str(repo_data, "pre_pr_checks"),
    )
    _ensure_distinct_labels(repo)

    agent = AgentConfig(
        api_base_url=_str_with_default(
            agent_data, "api_base_url", "https://jules.googleapis.com/v1alpha"
        ).rstrip("/"),
        api_key_env=_str_with_default(agent_data, "api_key_env", "JULES_API_KEY"),
        timeout_seconds=_int_with_default(agent_data, "timeout_seconds", 30),
        require_plan_approval=_bool_with_default(agent_data, "require_plan_approval", False),
        source=_optional_str(agent_data, "source"),
    )
    if agent.timeout_seconds < 1:
        raise ConfigError("agent.timeout_seconds must be >= 1")

    return AppConfig(runtime=runtime, repo=repo, agent=agent)


def _ensure_distinct_labels(repo: RepoConfig) -> None:
    labels = {
        "work_label": repo.work_label,
        "in_progress_label": repo.in_progress_label,
        "agent_pr_label": repo.agent_pr_label,
        "blocked_label": repo.blocked_label,
    }
    seen: dict[str, str] = {}
    for key, value in labels.items():
        existing = seen.get(value)
        if existing is not None:
            raise ConfigError(f"repo.{key} must differ from repo.{existing} (both {value!r})")
        seen[value] = key


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
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


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value
