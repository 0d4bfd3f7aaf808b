"""Variable Store - Scoped variables with fixed lookup precedence.

Unscoped lookups check local, then environment, then the current
collection, then global. Writes land in memory immediately so the next
read in the same script sees them; persistence runs afterwards on a single
background worker, so writes reach storage in the order they were made.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import structlog

from postpro.models import Variable, VariableScope
from postpro.storage import StorageBackend

logger = structlog.get_logger(__name__)

DEFAULT_ENVIRONMENT_ID = "default"

# Most specific first
LOOKUP_ORDER = (
    VariableScope.LOCAL,
    VariableScope.ENVIRONMENT,
    VariableScope.COLLECTION,
    VariableScope.GLOBAL,
)


def _completed() -> Future:
    future: Future = Future()
    future.set_result(None)
    return future


def _as_variable(value: str | Variable) -> Variable:
    if isinstance(value, Variable):
        return value.model_copy()
    return Variable(value=str(value))


class VariableStore:
    """Holds the global, environment, collection and local scopes.

    Usage:
        store = VariableStore(storage)
        store.activate_environment("dev", {"apiUrl": "http://localhost:3000"})
        store.set(VariableScope.ENVIRONMENT, "token", "abc")
        store.get("apiUrl")  # "http://localhost:3000"
        store.close()
    """

    def __init__(
        self,
        storage: StorageBackend | None = None,
        environment_id: str = DEFAULT_ENVIRONMENT_ID,
        collection_id: str | None = None,
    ) -> None:
        self._storage = storage
        self._environment_id = environment_id
        self._collection_id = collection_id
        self._globals: dict[str, Variable] = {}
        self._environments: dict[str, dict[str, Variable]] = {environment_id: {}}
        self._collections: dict[str, dict[str, Variable]] = {}
        self._local: dict[str, Variable] = {}
        self._executor: ThreadPoolExecutor | None = None

    def __enter__(self) -> "VariableStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Scope selection
    # -------------------------------------------------------------------------

    @property
    def environment_id(self) -> str:
        return self._environment_id

    @property
    def collection_id(self) -> str | None:
        return self._collection_id

    def activate_environment(
        self,
        environment_id: str,
        variables: dict[str, str | Variable] | None = None,
    ) -> None:
        """Make environment_id the one active environment.

        Passing variables replaces that environment's in-memory mapping.
        """
        self._environment_id = environment_id
        if variables is not None:
            self._environments[environment_id] = {
                name: _as_variable(value) for name, value in variables.items()
            }
        else:
            self._environments.setdefault(environment_id, {})

    def select_collection(
        self,
        collection_id: str | None,
        variables: dict[str, str | Variable] | None = None,
    ) -> None:
        self._collection_id = collection_id
        if collection_id is None:
            return
        if variables is not None:
            self._collections[collection_id] = {
                name: _as_variable(value) for name, value in variables.items()
            }
        else:
            self._collections.setdefault(collection_id, {})

    def load_globals(self, variables: dict[str, str | Variable]) -> None:
        self._globals = {name: _as_variable(value) for name, value in variables.items()}

    def load_from_storage(self) -> None:
        """Pull persisted variables for the active environment and collection."""
        if self._storage is None:
            return
        self._globals.update(self._storage.load_variables(VariableScope.GLOBAL))
        self._environments.setdefault(self._environment_id, {}).update(
            self._storage.load_variables(VariableScope.ENVIRONMENT, self._environment_id)
        )
        if self._collection_id is not None:
            self._collections.setdefault(self._collection_id, {}).update(
                self._storage.load_variables(VariableScope.COLLECTION, self._collection_id)
            )

    def _mapping(self, scope: VariableScope) -> dict[str, Variable] | None:
        """Return the live mapping for a scope, or None if no owner is selected."""
        if scope == VariableScope.GLOBAL:
            return self._globals
        if scope == VariableScope.ENVIRONMENT:
            return self._environments.setdefault(self._environment_id, {})
        if scope == VariableScope.COLLECTION:
            if self._collection_id is None:
                return None
            return self._collections.setdefault(self._collection_id, {})
        return self._local

    def _owner_id(self, scope: VariableScope) -> str | None:
        if scope == VariableScope.ENVIRONMENT:
            return self._environment_id
        if scope == VariableScope.COLLECTION:
            return self._collection_id
        return None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, name: str) -> str | None:
        """Resolve a name across scopes. Accepts bare names or {{name}}."""
        key = name.strip()
        if key.startswith("{{") and key.endswith("}}"):
            key = key[2:-2].strip()
        for scope in LOOKUP_ORDER:
            mapping = self._mapping(scope)
            if mapping is not None and key in mapping:
                return mapping[key].value
        return None

    def get_scoped(self, scope: VariableScope, name: str) -> str | None:
        mapping = self._mapping(scope)
        if mapping is None or name not in mapping:
            return None
        return mapping[name].value

    def has(self, scope: VariableScope, name: str) -> bool:
        mapping = self._mapping(scope)
        return mapping is not None and name in mapping

    def snapshot(self, scope: VariableScope) -> dict[str, str]:
        """Copy of name -> value for one scope."""
        mapping = self._mapping(scope) or {}
        return {name: var.value for name, var in mapping.items()}

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(
        self,
        scope: VariableScope,
        name: str,
        value: str,
        description: str = "",
    ) -> Future:
        """Set a variable. Memory first, storage afterwards.

        Returns:
            Future that completes when persistence has finished. Persistence
            errors are logged and never surface through the future.

        Raises:
            ValueError: If scope is COLLECTION and no collection is selected.
        """
        mapping = self._mapping(scope)
        if mapping is None:
            raise ValueError(f"No collection selected for {scope.value} variable '{name}'")

        variable = Variable(value=str(value), description=description)
        mapping[name] = variable
        logger.debug("variables.set", scope=scope.value, name=name)

        if scope == VariableScope.LOCAL or self._storage is None:
            return _completed()
        return self._submit(
            self._storage.set_variable, scope, name, variable.model_copy(), self._owner_id(scope)
        )

    def unset(self, scope: VariableScope, name: str) -> Future:
        """Remove a variable from one scope. Sibling scopes are untouched."""
        mapping = self._mapping(scope)
        if mapping is None:
            raise ValueError(f"No collection selected for {scope.value} variable '{name}'")

        mapping.pop(name, None)
        logger.debug("variables.unset", scope=scope.value, name=name)

        if scope == VariableScope.LOCAL or self._storage is None:
            return _completed()
        return self._submit(self._storage.delete_variable, scope, name, self._owner_id(scope))

    def clear_local(self) -> None:
        self._local.clear()

    def _submit(self, operation: Callable[..., None], *args: Any) -> Future:
        if self._executor is None:
            # One worker keeps storage writes in call order (last write wins)
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="postpro-persist"
            )
        return self._executor.submit(self._persist, operation, *args)

    @staticmethod
    def _persist(operation: Callable[..., None], *args: Any) -> None:
        try:
            operation(*args)
        except Exception as e:
            # In-memory value stays; storage catches up on the next write
            logger.warning(
                "variables.persist_failed",
                operation=getattr(operation, "__name__", repr(operation)),
                error=str(e),
                error_type=type(e).__name__,
            )

    def flush(self) -> None:
        """Block until every pending persistence write has finished."""
        if self._executor is not None:
            self._executor.submit(lambda: None).result()

    def close(self) -> None:
        """Finish pending writes and stop the persistence worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
