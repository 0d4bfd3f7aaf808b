"""Tests for VariableStore scoping, precedence and persistence."""

from unittest.mock import MagicMock

import pytest

from postpro.models import Variable, VariableScope
from postpro.storage import InMemoryStorage
from postpro.variables import VariableStore


class TestPrecedence:
    def test_environment_wins_over_collection_and_global(self, store):
        store.select_collection("col-1")
        store.set(VariableScope.GLOBAL, "name", "global")
        store.set(VariableScope.COLLECTION, "name", "collection")
        store.set(VariableScope.ENVIRONMENT, "name", "environment")

        assert store.get("name") == "environment"

    def test_local_wins_over_everything(self, store):
        store.set(VariableScope.ENVIRONMENT, "name", "environment")
        store.set(VariableScope.LOCAL, "name", "local")

        assert store.get("name") == "local"

    def test_collection_wins_over_global(self, store):
        store.select_collection("col-1")
        store.set(VariableScope.GLOBAL, "name", "global")
        store.set(VariableScope.COLLECTION, "name", "collection")

        assert store.get("name") == "collection"

    def test_falls_through_to_global(self, store):
        store.set(VariableScope.GLOBAL, "only", "g")
        assert store.get("only") == "g"

    def test_missing_returns_none(self, store):
        assert store.get("nope") is None

    def test_accepts_braced_name(self, store):
        store.set(VariableScope.GLOBAL, "apiUrl", "http://x")
        assert store.get("{{apiUrl}}") == "http://x"
        assert store.get("  {{ apiUrl }} ") == "http://x"


class TestScopes:
    def test_unset_only_touches_one_scope(self, store):
        store.set(VariableScope.GLOBAL, "name", "global")
        store.set(VariableScope.ENVIRONMENT, "name", "environment")

        store.unset(VariableScope.ENVIRONMENT, "name")

        assert store.get("name") == "global"

    def test_collection_without_selection_raises(self, store):
        with pytest.raises(ValueError, match="No collection selected"):
            store.set(VariableScope.COLLECTION, "x", "1")

    def test_collection_variables_are_per_collection(self, store):
        store.select_collection("a", {"base": "A"})
        store.select_collection("b", {"base": "B"})

        assert store.get("base") == "B"
        store.select_collection("a")
        assert store.get("base") == "A"

    def test_switching_environment(self, store):
        store.activate_environment("dev", {"host": "dev.local"})
        store.activate_environment("prod", {"host": "prod.example"})

        assert store.get("host") == "prod.example"
        store.activate_environment("dev")
        assert store.get("host") == "dev.local"
        assert store.environment_id == "dev"

    def test_snapshot_is_a_copy(self, store):
        store.set(VariableScope.GLOBAL, "a", "1")
        snap = store.snapshot(VariableScope.GLOBAL)
        snap["a"] = "changed"

        assert store.get("a") == "1"

    def test_values_are_stored_as_strings(self, store):
        store.set(VariableScope.GLOBAL, "n", 42)
        assert store.get("n") == "42"

    def test_clear_local(self, store):
        store.set(VariableScope.LOCAL, "tmp", "1")
        store.clear_local()
        assert store.has(VariableScope.LOCAL, "tmp") is False


class TestPersistence:
    def test_set_is_visible_before_persistence_finishes(self):
        storage = MagicMock()
        store = VariableStore(storage)
        try:
            store.set(VariableScope.ENVIRONMENT, "token", "abc")
            assert store.get("token") == "abc"
        finally:
            store.close()

    def test_writes_reach_storage(self, store, storage):
        future = store.set(VariableScope.ENVIRONMENT, "token", "abc")
        future.result(timeout=5)

        assert storage.get_variable(VariableScope.ENVIRONMENT, "token", "default") == "abc"

    def test_unset_reaches_storage(self, store, storage):
        store.set(VariableScope.GLOBAL, "x", "1")
        store.unset(VariableScope.GLOBAL, "x").result(timeout=5)

        assert storage.get_variable(VariableScope.GLOBAL, "x") is None

    def test_writes_persist_in_call_order(self, store, storage):
        for value in ("1", "2", "3"):
            store.set(VariableScope.GLOBAL, "counter", value)
        store.flush()

        assert storage.get_variable(VariableScope.GLOBAL, "counter") == "3"

    def test_local_scope_never_persists(self):
        storage = MagicMock()
        store = VariableStore(storage)
        try:
            future = store.set(VariableScope.LOCAL, "tmp", "1")
            assert future.done()
            store.flush()
            storage.set_variable.assert_not_called()
        finally:
            store.close()

    def test_persistence_failure_keeps_memory_value(self):
        storage = MagicMock()
        storage.set_variable.side_effect = OSError("disk full")
        store = VariableStore(storage)
        try:
            future = store.set(VariableScope.GLOBAL, "x", "1")
            assert future.result(timeout=5) is None
            assert store.get("x") == "1"
        finally:
            store.close()

    def test_load_from_storage(self):
        storage = InMemoryStorage()
        storage.set_variable(VariableScope.GLOBAL, "g", Variable(value="1"))
        storage.set_variable(VariableScope.ENVIRONMENT, "e", Variable(value="2"), "dev")
        storage.set_variable(VariableScope.COLLECTION, "c", Variable(value="3"), "col")

        with VariableStore(storage, environment_id="dev", collection_id="col") as store:
            store.load_from_storage()
            assert store.get("g") == "1"
            assert store.get("e") == "2"
            assert store.get("c") == "3"

    def test_without_storage(self):
        store = VariableStore()
        future = store.set(VariableScope.GLOBAL, "x", "1")
        assert future.done()
        assert store.get("x") == "1"
