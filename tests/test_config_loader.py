"""Tests for workspace config loading and session wiring."""

import json
from pathlib import Path

import pytest
import yaml

from postpro.config_loader import build_session, load_workspace_config
from postpro.errors import ConfigError
from postpro.models import (
    Collection,
    RequestDefinition,
    ResponseExecution,
    VariableScope,
    WorkspaceConfig,
)
from postpro.storage import InMemoryStorage, JsonFileStorage


def write_yaml(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    write_yaml(
        tmp_path / "collections" / "users.yaml",
        {
            "id": "users",
            "name": "Users",
            "requests": [
                {"id": "list", "name": "List users", "url": "{{apiUrl}}/users"},
            ],
        },
    )
    (tmp_path / "scenarios").mkdir()
    (tmp_path / "scenarios" / "flow.json").write_text(
        json.dumps({"id": "flow", "name": "Flow", "requests": [{"id": "s1", "url": "http://x.test/"}]})
    )
    return write_yaml(
        tmp_path / "postpro.yaml",
        {
            "settings": {"request_timeout_ms": 5000},
            "globals": {"apiUrl": "http://localhost:3000"},
            "environments": [
                {"id": "dev", "variables": {"token": {"value": "${TEST_POSTPRO_TOKEN}"}}},
                {"id": "prod", "variables": {"token": {"value": "prod-token"}}},
            ],
            "active_environment": "dev",
            "collection_variables": {"users": {"page": "1"}},
            "collections": ["collections/users.yaml"],
            "scenarios": ["scenarios/flow.json"],
        },
    )


class TestLoadWorkspaceConfig:
    def test_loads_and_resolves_files(self, workspace, monkeypatch):
        monkeypatch.setenv("TEST_POSTPRO_TOKEN", "dev-token")
        config = load_workspace_config(workspace)

        assert config.settings.request_timeout_ms == 5000
        assert config.environments[0].variables["token"].value == "dev-token"
        assert isinstance(config.collections[0], Collection)
        assert config.collections[0].requests[0].name == "List users"
        assert config.scenarios[0].requests[0].id == "s1"

    def test_missing_env_var(self, workspace, monkeypatch):
        monkeypatch.delenv("TEST_POSTPRO_TOKEN", raising=False)
        with pytest.raises(ConfigError, match="TEST_POSTPRO_TOKEN"):
            load_workspace_config(workspace)

    def test_references_left_alone(self, tmp_path):
        script = 'setVarFromHeader t ${"Users"."Login"."response"."headers"."X-Token"}'
        path = write_yaml(
            tmp_path / "ws.yaml",
            {"collections": [{"id": "c", "requests": [{"id": "r", "test_script": script}]}]},
        )
        config = load_workspace_config(path)
        assert config.collections[0].requests[0].test_script == script

    def test_template_literals_in_scripts_left_alone(self, tmp_path, monkeypatch):
        monkeypatch.delenv("code", raising=False)
        script = 'pm.test(`status is ${pm.response.code}`, () => {}); const s = `${code}`;'
        path = write_yaml(
            tmp_path / "ws.yaml",
            {"collections": [{"id": "c", "requests": [{"id": "r", "test_script": script}]}]},
        )
        config = load_workspace_config(path)
        assert config.collections[0].requests[0].test_script == script

    def test_non_identifier_placeholders_left_alone(self, tmp_path):
        path = write_yaml(tmp_path / "ws.yaml", {"globals": {"note": "cost: ${a.b} ${1x}"}})
        config = load_workspace_config(path)
        assert config.globals["note"] == "cost: ${a.b} ${1x}"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_workspace_config(tmp_path / "nope.yaml")

    def test_missing_collection_file(self, tmp_path):
        path = write_yaml(tmp_path / "ws.yaml", {"collections": ["gone.yaml"]})
        with pytest.raises(ConfigError, match="Collection not found"):
            load_workspace_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "ws.yaml"
        path.write_text("globals: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_workspace_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "ws.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a YAML mapping"):
            load_workspace_config(path)

    def test_unknown_keys_rejected(self, tmp_path):
        path = write_yaml(tmp_path / "ws.yaml", {"unexpected": True})
        with pytest.raises(ConfigError, match="Invalid config structure"):
            load_workspace_config(path)

    def test_storage_dir_relative_to_config(self, tmp_path):
        path = write_yaml(tmp_path / "ws.yaml", {"storage_dir": ".state"})
        config = load_workspace_config(path)
        assert Path(config.storage_dir) == (tmp_path / ".state").resolve()


class TestBuildSession:
    def test_scopes_populated(self, workspace, monkeypatch):
        monkeypatch.setenv("TEST_POSTPRO_TOKEN", "dev-token")
        session = build_session(load_workspace_config(workspace))
        try:
            store = session.store
            assert store.environment_id == "dev"
            assert store.get("token") == "dev-token"
            assert store.get("apiUrl") == "http://localhost:3000"
            assert store.collection_id is None

            store.select_collection("users")
            assert store.get_scoped(VariableScope.COLLECTION, "page") == "1"
            assert session.settings.request_timeout_ms == 5000
            assert [c.name for c in session.collections] == ["Users"]
            assert session.find_scenario("Flow").id == "flow"
        finally:
            session.close()

    def test_unknown_active_environment(self):
        config = WorkspaceConfig(active_environment="staging")
        with pytest.raises(ConfigError, match="Environment 'staging' not found"):
            build_session(config)

    def test_default_environment(self):
        session = build_session(WorkspaceConfig())
        try:
            assert session.store.environment_id == "default"
            assert isinstance(session.storage, InMemoryStorage)
        finally:
            session.close()

    def test_storage_dir_selects_file_storage(self, tmp_path):
        session = build_session(WorkspaceConfig(storage_dir=str(tmp_path / "state")))
        try:
            assert isinstance(session.storage, JsonFileStorage)
        finally:
            session.close()

    def test_persisted_variables_override_configured(self):
        storage = InMemoryStorage()
        config = WorkspaceConfig(globals={"apiUrl": "http://configured"})
        first = build_session(config, storage=storage)
        first.store.set(VariableScope.GLOBAL, "apiUrl", "http://persisted")
        first.close()

        second = build_session(config, storage=storage)
        try:
            assert second.store.get("apiUrl") == "http://persisted"
        finally:
            second.close()

    def test_stored_execution_metadata_merged(self):
        storage = InMemoryStorage()
        sent = RequestDefinition(id="r1", name="Login")
        sent.last_response_execution = ResponseExecution(
            timestamp="2024-01-01T00:00:00+00:00", status=201, duration=1.0, size=0
        )
        storage.save_collections([Collection(id="c", name="Auth", requests=[sent])])

        config = WorkspaceConfig(
            collections=[Collection(id="c", name="Auth", requests=[RequestDefinition(id="r1", name="Login")])]
        )
        session = build_session(config, storage=storage)
        try:
            request = session.collections[0].requests[0]
            assert request.last_response_execution.status == 201
        finally:
            session.close()
