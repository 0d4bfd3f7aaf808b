"""Storage - Persistence collaborators for variables, collections and history.

The pipeline depends only on the StorageBackend protocol. Two adapters are
provided: InMemoryStorage (tests, throwaway sessions) and JsonFileStorage
(a directory of JSON documents).
"""

from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from postpro.models import Collection, HistoryItem, Scenario, Variable, VariableScope


class StorageBackend(Protocol):
    """What the core needs from persistence. Format is the adapter's business."""

    def load_variables(
        self, scope: VariableScope, owner_id: str | None = None
    ) -> dict[str, Variable]: ...

    def get_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> str | None: ...

    def set_variable(
        self,
        scope: VariableScope,
        name: str,
        variable: Variable,
        owner_id: str | None = None,
    ) -> None: ...

    def delete_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> None: ...

    def get_collections(self) -> list[Collection]: ...

    def save_collections(self, collections: list[Collection]) -> None: ...

    def get_scenarios(self) -> list[Scenario]: ...

    def save_scenarios(self, scenarios: list[Scenario]) -> None: ...

    def get_history(self) -> list[HistoryItem]: ...

    def append_history(self, item: HistoryItem, limit: int) -> None: ...


def _owner_key(scope: VariableScope, owner_id: str | None) -> str:
    # Global variables have no owner; scoped ones are keyed by env/collection id
    if scope == VariableScope.GLOBAL:
        return ""
    return owner_id or ""


class InMemoryStorage:
    """Keeps everything in process memory."""

    def __init__(self) -> None:
        self._variables: dict[str, dict[str, dict[str, Variable]]] = {}
        self._collections: list[Collection] = []
        self._scenarios: list[Scenario] = []
        self._history: list[HistoryItem] = []
        self._lock = Lock()

    def load_variables(
        self, scope: VariableScope, owner_id: str | None = None
    ) -> dict[str, Variable]:
        with self._lock:
            owned = self._variables.get(scope.value, {}).get(_owner_key(scope, owner_id), {})
            return {name: var.model_copy() for name, var in owned.items()}

    def get_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> str | None:
        variable = self.load_variables(scope, owner_id).get(name)
        return variable.value if variable is not None else None

    def set_variable(
        self,
        scope: VariableScope,
        name: str,
        variable: Variable,
        owner_id: str | None = None,
    ) -> None:
        with self._lock:
            owned = self._variables.setdefault(scope.value, {}).setdefault(
                _owner_key(scope, owner_id), {}
            )
            owned[name] = variable.model_copy()

    def delete_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> None:
        with self._lock:
            owned = self._variables.get(scope.value, {}).get(_owner_key(scope, owner_id), {})
            owned.pop(name, None)

    def get_collections(self) -> list[Collection]:
        return [c.model_copy(deep=True) for c in self._collections]

    def save_collections(self, collections: list[Collection]) -> None:
        self._collections = [c.model_copy(deep=True) for c in collections]

    def get_scenarios(self) -> list[Scenario]:
        return [s.model_copy(deep=True) for s in self._scenarios]

    def save_scenarios(self, scenarios: list[Scenario]) -> None:
        self._scenarios = [s.model_copy(deep=True) for s in scenarios]

    def get_history(self) -> list[HistoryItem]:
        return list(self._history)

    def append_history(self, item: HistoryItem, limit: int) -> None:
        # Newest first, like the editor's history panel
        self._history.insert(0, item)
        del self._history[limit:]


class JsonFileStorage:
    """Persists each document as a JSON file under one directory.

    Layout:
        variables.json    {"global": {"": {...}}, "environment": {"<env id>": {...}}, ...}
        collections.json  [Collection, ...]
        scenarios.json    [Scenario, ...]
        history.json      [HistoryItem, ...] newest first
    """

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _read(self, filename: str, default: Any) -> Any:
        path = self._dir / filename
        if not path.exists():
            return default
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, filename: str, data: Any) -> None:
        path = self._dir / filename
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(path)

    def load_variables(
        self, scope: VariableScope, owner_id: str | None = None
    ) -> dict[str, Variable]:
        with self._lock:
            raw = self._read("variables.json", {})
        owned = raw.get(scope.value, {}).get(_owner_key(scope, owner_id), {})
        return {name: Variable.model_validate(data) for name, data in owned.items()}

    def get_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> str | None:
        variable = self.load_variables(scope, owner_id).get(name)
        return variable.value if variable is not None else None

    def set_variable(
        self,
        scope: VariableScope,
        name: str,
        variable: Variable,
        owner_id: str | None = None,
    ) -> None:
        with self._lock:
            raw = self._read("variables.json", {})
            owned = raw.setdefault(scope.value, {}).setdefault(_owner_key(scope, owner_id), {})
            owned[name] = variable.model_dump(mode="json")
            self._write("variables.json", raw)

    def delete_variable(
        self, scope: VariableScope, name: str, owner_id: str | None = None
    ) -> None:
        with self._lock:
            raw = self._read("variables.json", {})
            owned = raw.get(scope.value, {}).get(_owner_key(scope, owner_id))
            if owned and name in owned:
                del owned[name]
                self._write("variables.json", raw)

    def get_collections(self) -> list[Collection]:
        with self._lock:
            raw = self._read("collections.json", [])
        return [Collection.model_validate(c) for c in raw]

    def save_collections(self, collections: list[Collection]) -> None:
        with self._lock:
            self._write("collections.json", [c.model_dump(mode="json") for c in collections])

    def get_scenarios(self) -> list[Scenario]:
        with self._lock:
            raw = self._read("scenarios.json", [])
        return [Scenario.model_validate(s) for s in raw]

    def save_scenarios(self, scenarios: list[Scenario]) -> None:
        with self._lock:
            self._write("scenarios.json", [s.model_dump(mode="json") for s in scenarios])

    def get_history(self) -> list[HistoryItem]:
        with self._lock:
            raw = self._read("history.json", [])
        return [HistoryItem.model_validate(h) for h in raw]

    def append_history(self, item: HistoryItem, limit: int) -> None:
        with self._lock:
            raw = self._read("history.json", [])
            raw.insert(0, item.model_dump(mode="json"))
            self._write("history.json", raw[:limit])
