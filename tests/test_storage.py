"""Tests for the storage adapters."""

import json

import pytest

from postpro.models import Collection, HistoryItem, Scenario, Variable, VariableScope
from postpro.storage import InMemoryStorage, JsonFileStorage
from tests.conftest import make_processed_response, make_request


def _history_item(index: int) -> HistoryItem:
    return HistoryItem(
        id=f"h{index}",
        timestamp="2024-01-01T00:00:00+00:00",
        request=make_request(id=f"r{index}"),
        response=make_processed_response(),
    )


@pytest.fixture(params=["memory", "json"])
def backend(request, tmp_path):
    if request.param == "memory":
        return InMemoryStorage()
    return JsonFileStorage(tmp_path / "store")


class TestVariables:
    def test_set_and_get(self, backend):
        backend.set_variable(VariableScope.GLOBAL, "a", Variable(value="1"))
        assert backend.get_variable(VariableScope.GLOBAL, "a") == "1"

    def test_owner_isolation(self, backend):
        backend.set_variable(VariableScope.ENVIRONMENT, "host", Variable(value="dev"), "dev")
        backend.set_variable(VariableScope.ENVIRONMENT, "host", Variable(value="prod"), "prod")

        assert backend.get_variable(VariableScope.ENVIRONMENT, "host", "dev") == "dev"
        assert backend.get_variable(VariableScope.ENVIRONMENT, "host", "prod") == "prod"

    def test_delete(self, backend):
        backend.set_variable(VariableScope.GLOBAL, "a", Variable(value="1"))
        backend.delete_variable(VariableScope.GLOBAL, "a")
        assert backend.get_variable(VariableScope.GLOBAL, "a") is None

    def test_delete_missing_is_noop(self, backend):
        backend.delete_variable(VariableScope.GLOBAL, "never")

    def test_load_variables_keeps_description(self, backend):
        backend.set_variable(
            VariableScope.GLOBAL, "a", Variable(value="1", description="first")
        )
        loaded = backend.load_variables(VariableScope.GLOBAL)
        assert loaded["a"].description == "first"


class TestDocuments:
    def test_collections_round_trip(self, backend):
        backend.save_collections([Collection(id="c", name="C", requests=[make_request()])])
        loaded = backend.get_collections()
        assert loaded[0].requests[0].id == "req-1"

    def test_scenarios_round_trip(self, backend):
        backend.save_scenarios([Scenario(id="s", name="S")])
        assert [s.id for s in backend.get_scenarios()] == ["s"]

    def test_history_newest_first_and_capped(self, backend):
        for index in range(5):
            backend.append_history(_history_item(index), limit=3)

        assert [h.id for h in backend.get_history()] == ["h4", "h3", "h2"]


class TestJsonFileStorage:
    def test_files_are_plain_json(self, tmp_path):
        storage = JsonFileStorage(tmp_path)
        storage.set_variable(VariableScope.ENVIRONMENT, "token", Variable(value="abc"), "dev")

        data = json.loads((tmp_path / "variables.json").read_text(encoding="utf-8"))
        assert data["environment"]["dev"]["token"]["value"] == "abc"

    def test_survives_reopen(self, tmp_path):
        JsonFileStorage(tmp_path).set_variable(VariableScope.GLOBAL, "a", Variable(value="1"))
        assert JsonFileStorage(tmp_path).get_variable(VariableScope.GLOBAL, "a") == "1"

    def test_empty_directory_defaults(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "new")
        assert storage.get_collections() == []
        assert storage.get_history() == []
