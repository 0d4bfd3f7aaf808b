"""Session - Explicit context passed through the pipeline.

Interpreters and the orchestrator receive a Session instead of reaching for
process-wide state: the variable store, the storage backend, client settings
and the loaded collections and scenarios all travel together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from postpro.errors import UndefinedVariableError
from postpro.models import ClientSettings, Collection, Scenario
from postpro.references import is_reference, resolve_reference
from postpro.storage import InMemoryStorage, StorageBackend
from postpro.variables import VariableStore


@dataclass
class Session:
    """Everything one run of the pipeline needs besides the request itself."""

    store: VariableStore
    storage: StorageBackend = field(default_factory=InMemoryStorage)
    settings: ClientSettings = field(default_factory=ClientSettings)
    collections: list[Collection] = field(default_factory=list)
    scenarios: list[Scenario] = field(default_factory=list)

    def resolve(self, name: str) -> Any:
        """Resolve a variable name or a ${...} cross-request reference.

        Raises:
            UndefinedVariableError: If nothing resolves.
        """
        name = name.strip()
        if is_reference(name):
            return resolve_reference(name, self.collections)
        value = self.store.get(name)
        if value is None:
            raise UndefinedVariableError(name)
        return value

    def find_collection(self, key: str) -> Collection | None:
        """Find a collection by id, then by name."""
        for collection in self.collections:
            if collection.id == key:
                return collection
        return next((c for c in self.collections if c.name == key), None)

    def find_scenario(self, key: str) -> Scenario | None:
        for scenario in self.scenarios:
            if scenario.id == key:
                return scenario
        return next((s for s in self.scenarios if s.name == key), None)

    def close(self) -> None:
        self.store.close()
