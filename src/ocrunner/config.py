from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
import os
from pathlib import Path
import re
import tomllib
from typing import cast

from ocrunner.models import AgentConfig, RepositoryInfo, RunConfig, RunMode


DEFAULT_TOKEN_ENV = "AZURE_DEVOPS_PAT"
DEFAULT_WORKSPACE_PATH = "./workspace"
BUILD_ID_ENV = "BUILD_BUILDID"
COLLECTION_URI_ENV = "SYSTEM_COLLECTIONURI"

_DEV_AZURE_PATTERN = re.compile(r"https://dev\.azure\.com/([^/]+)", re.IGNORECASE)
_VISUALSTUDIO_PATTERN = re.compile(r"https://([^.]+)\.visualstudio\.com", re.IGNORECASE)


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> RunConfig:
    env = os.environ if environ is None else environ
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    repository_data = _require_table(data, "repository")
    pull_request_data = _require_table(data, "pull_request")
    agent_data = _require_table(data, "agent")
    run_data = _optional_table(data, "run") or {}

    collection_uri = _optional_str(repository_data, "collection_uri") or env.get(
        COLLECTION_URI_ENV
    )
    organization = _optional_str(repository_data, "organization")
    repository = RepositoryInfo(
        organization=resolve_organization(organization, collection_uri),
        project=_require_str(repository_data, "project"),
        repository_id=_require_str(repository_data, "repository_id"),
    )

    thread_id = _optional_positive_int(pull_request_data, "thread_id")
    comment_id = _optional_positive_int(pull_request_data, "comment_id")
    _check_trigger_ids(thread_id, comment_id)

    token_env = _str_with_default(run_data, "token_env", DEFAULT_TOKEN_ENV)
    token = env.get(token_env, "")
    if not token:
        raise ConfigError(f"Access token environment variable {token_env} is not set")

    agent = AgentConfig(
        name=_optional_str(agent_data, "name"),
        provider_id=_require_str(agent_data, "provider_id"),
        model_id=_require_str(agent_data, "model_id"),
        host=_str_with_default(agent_data, "host", "127.0.0.1"),
        port=_int_with_default(agent_data, "port", 4096),
    )
    if not 0 < agent.port < 65536:
        raise ConfigError("agent.port must be between 1 and 65535")

    return RunConfig(
        repository=repository,
        pull_request_id=_require_positive_int(pull_request_data, "id"),
        thread_id=thread_id,
        comment_id=comment_id,
        token=token,
        agent=agent,
        workspace_path=Path(
            _str_with_default(run_data, "workspace_path", DEFAULT_WORKSPACE_PATH)
        ).expanduser(),
        mode=_optional_mode(run_data, "mode"),
        skip_clone=_bool_with_default(run_data, "skip_clone", False),
        custom_prompt=_optional_str(run_data, "custom_prompt"),
        build_id=_optional_str(run_data, "build_id") or env.get(BUILD_ID_ENV) or None,
    )


def apply_overrides(
    config: RunConfig,
    *,
    mode: str | None = None,
    pull_request_id: int | None = None,
    thread_id: int | None = None,
    comment_id: int | None = None,
    workspace_path: Path | None = None,
    skip_clone: bool | None = None,
    build_id: str | None = None,
) -> RunConfig:
    updated = config
    if mode is not None:
        updated = replace(updated, mode=parse_mode(mode, key="--mode"))
    if pull_request_id is not None:
        if pull_request_id < 1:
            raise ConfigError("--pr-id must be >= 1")
        updated = replace(updated, pull_request_id=pull_request_id)
    if thread_id is not None:
        updated = replace(updated, thread_id=thread_id)
    if comment_id is not None:
        updated = replace(updated, comment_id=comment_id)
    if workspace_path is not None:
        updated = replace(updated, workspace_path=workspace_path.expanduser())
    if skip_clone is not None:
        updated = replace(updated, skip_clone=skip_clone)
    if build_id is not None:
        updated = replace(updated, build_id=build_id or None)
    _check_trigger_ids(updated.thread_id, updated.comment_id)
    return updated


def extract_organization_from_collection_uri(collection_uri: str | None) -> str | None:
    if not collection_uri:
        return None
    match = _DEV_AZURE_PATTERN.match(collection_uri)
    if match is not None:
        return match.group(1)
    match = _VISUALSTUDIO_PATTERN.match(collection_uri)
    if match is not None:
        return match.group(1)
    return None


def resolve_organization(organization: str | None, collection_uri: str | None) -> str:
    resolved = organization or extract_organization_from_collection_uri(collection_uri)
    if not resolved:
        raise ConfigError(
            "Unable to determine repository organization. Provide repository.organization "
            "or a collection_uri that contains it."
        )
    return resolved


def parse_mode(value: object, *, key: str) -> RunMode:
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: command, review")
    normalized = value.strip().lower()
    if normalized not in {"command", "review"}:
        raise ConfigError(f"{key} must be one of: command, review")
    return cast(RunMode, normalized)


def _check_trigger_ids(thread_id: int | None, comment_id: int | None) -> None:
    if (thread_id is None) != (comment_id is None):
        raise ConfigError("pull_request.thread_id and pull_request.comment_id go together")


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
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
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


def _require_positive_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"{key} is required and must be an integer >= 1")
    return value


def _optional_positive_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"{key} must be an integer >= 1 if provided")
    return value


def _optional_mode(data: dict[str, object], key: str) -> RunMode | None:
    value = data.get(key)
    if value is None:
        return None
    return parse_mode(value, key=key)
