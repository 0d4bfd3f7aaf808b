"""Config Loader - Loads the workspace file and wires a Session.

The workspace is a YAML file with ${ENV_VAR} substitution. Collections and
scenarios may be given inline or as paths (JSON or YAML) relative to the
workspace file.

    settings:
      request_timeout_ms: 10000
    globals:
      apiUrl: http://localhost:3000
    environments:
      - id: dev
        variables:
          token: {value: "${DEV_TOKEN}"}
    active_environment: dev
    collections:
      - collections/users.yaml
    storage_dir: .postpro
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from postpro.errors import ConfigError
from postpro.models import Collection, Scenario, WorkspaceConfig
from postpro.session import Session
from postpro.storage import InMemoryStorage, JsonFileStorage, StorageBackend
from postpro.variables import DEFAULT_ENVIRONMENT_ID, VariableStore

logger = structlog.get_logger(__name__)

_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SCRIPT_FIELDS = frozenset({"pre_request_script", "test_script"})


def load_workspace_config(config_path: Path) -> WorkspaceConfig:
    """Load a workspace file, resolving collection and scenario file references.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, references an
            unset environment variable, or does not match WorkspaceConfig.
    """
    raw_config = _load_document(config_path, "Config file")
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)
    base_dir = config_path.parent

    try:
        config = WorkspaceConfig.model_validate(raw_config)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e

    config.collections = [
        _resolve_entry(entry, Collection, base_dir) for entry in config.collections
    ]
    config.scenarios = [_resolve_entry(entry, Scenario, base_dir) for entry in config.scenarios]
    if config.storage_dir is not None:
        config.storage_dir = str(_resolve_path(base_dir, config.storage_dir))
    return config


def build_session(config: WorkspaceConfig, storage: StorageBackend | None = None) -> Session:
    """Create a Session with every scope populated from config.

    Persisted variables (when storage_dir is set) are layered over the
    configured ones.
    """
    if storage is None:
        if config.storage_dir:
            storage = JsonFileStorage(Path(config.storage_dir))
        else:
            storage = InMemoryStorage()

    environment_id = config.active_environment or DEFAULT_ENVIRONMENT_ID
    known = {env.id for env in config.environments}
    if config.active_environment and config.active_environment not in known:
        available = ", ".join(sorted(known)) or "(none)"
        raise ConfigError(
            f"Environment '{config.active_environment}' not found in config. Available: {available}"
        )

    store = VariableStore(storage, environment_id=environment_id)
    store.load_globals(config.globals)
    for environment in config.environments:
        store.activate_environment(environment.id, environment.variables)
    store.activate_environment(environment_id)
    for collection_id, variables in config.collection_variables.items():
        store.select_collection(collection_id, variables)
    store.select_collection(None)
    store.load_from_storage()

    collections = [c for c in config.collections if isinstance(c, Collection)]
    scenarios = [s for s in config.scenarios if isinstance(s, Scenario)]
    # Stored copies carry last-execution metadata from earlier runs
    collections = _merge_stored(collections, storage.get_collections())
    scenarios = _merge_stored(scenarios, storage.get_scenarios())

    logger.debug(
        "config.session_built",
        environment=environment_id,
        collections=len(collections),
        scenarios=len(scenarios),
    )
    return Session(
        store=store,
        storage=storage,
        settings=config.settings,
        collections=collections,
        scenarios=scenarios,
    )


def _merge_stored(configured: list[Any], stored: list[Any]) -> list[Any]:
    """Copy last_*_execution from stored requests onto configured ones by id."""
    executions: dict[str, tuple[Any, Any]] = {}
    for container in stored:
        for request in container.requests:
            executions[request.id] = (
                request.last_request_execution,
                request.last_response_execution,
            )
    for container in configured:
        for request in container.requests:
            if request.id in executions and request.last_response_execution is None:
                request.last_request_execution, request.last_response_execution = executions[
                    request.id
                ]
    return configured


def _resolve_entry(entry: Any, model: type, base_dir: Path) -> Any:
    if not isinstance(entry, str):
        return entry
    path = _resolve_path(base_dir, entry)
    raw = _substitute_env_vars(_load_document(path, model.__name__))
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid {model.__name__.lower()} in {path}: {e}") from e


def _resolve_path(base_dir: Path, ref: str) -> Path:
    """Resolve ref relative to the workspace file. Absolute paths pass through."""
    path = Path(ref)
    if path.is_absolute():
        return path
    return (base_dir / path).resolve()


def _load_document(path: Path, label: str) -> Any:
    """Read a JSON or YAML document. JSON is chosen by the .json suffix."""
    if not path.exists():
        raise ConfigError(f"{label} not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data.

    Only identifier names are substituted, so cross-request references such
    as ${"Col"."Req"."response"."body"} are left alone. Script fields are
    never substituted: their ${...} belongs to template literals.
    """
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {
            k: v if k in _SCRIPT_FIELDS else _substitute_env_vars(v) for k, v in data.items()
        }
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_RE.sub(replacer, s)
