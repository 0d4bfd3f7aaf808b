"""Pytest configuration and fixtures for postpro tests.

This file provides:
- make_processed_response / make_request: factories with sensible defaults
- echo_transport: an httpx.MockTransport that reflects requests back as JSON
- Fixtures: a store, a session and an orchestrator wired to a mock transport
"""

from __future__ import annotations

import json
from typing import Any, Callable, Generator

import httpx
import pytest

from postpro.models import BodyType, ProcessedResponse, RequestDefinition
from postpro.orchestrator import RequestOrchestrator
from postpro.session import Session
from postpro.storage import InMemoryStorage
from postpro.transport import TransportExecutor
from postpro.variables import VariableStore


def make_processed_response(
    status: int = 200,
    headers: dict[str, str] | None = None,
    body: Any = None,
    body_text: str | None = None,
    status_text: str = "OK",
    duration: float = 12.0,
) -> ProcessedResponse:
    """Create a ProcessedResponse for testing assertions.

    Prefer this over constructing ProcessedResponse directly. A dict or list
    body gets a matching JSON body_text and content-type unless given.
    """
    if body_text is None:
        body_text = body if isinstance(body, str) else json.dumps(body) if body is not None else ""
    if headers is None:
        headers = {"Content-Type": "application/json"} if isinstance(body, (dict, list)) else {}
    return ProcessedResponse(
        status=status,
        status_text=status_text,
        headers=headers,
        body_text=body_text,
        body=body if body is not None else body_text,
        duration=duration,
        size=len(body_text.encode("utf-8")),
    )


def make_request(
    id: str = "req-1",
    url: str = "http://api.test/items",
    method: str = "GET",
    **fields: Any,
) -> RequestDefinition:
    """Create a RequestDefinition with sensible defaults."""
    return RequestDefinition(id=id, name=fields.pop("name", id), url=url, method=method, **fields)


def echo_handler(request: httpx.Request) -> httpx.Response:
    """Reflect method, url, headers and body back as JSON, like an echo service."""
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "url": str(request.url),
            "headers": dict(request.headers),
            "body": request.content.decode("utf-8"),
        },
    )


def make_executor(handler: Callable[[httpx.Request], httpx.Response] = echo_handler) -> TransportExecutor:
    return TransportExecutor(transport=httpx.MockTransport(handler))


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage: InMemoryStorage) -> Generator[VariableStore, None, None]:
    variable_store = VariableStore(storage)
    yield variable_store
    variable_store.close()


@pytest.fixture
def session(store: VariableStore, storage: InMemoryStorage) -> Session:
    return Session(store=store, storage=storage)


@pytest.fixture
def echo_executor() -> Generator[TransportExecutor, None, None]:
    executor = make_executor()
    yield executor
    executor.close()


@pytest.fixture
def orchestrator(session: Session, echo_executor: TransportExecutor) -> RequestOrchestrator:
    return RequestOrchestrator(session, echo_executor)


@pytest.fixture
def json_request() -> RequestDefinition:
    return make_request(
        method="POST",
        body='{"a": 1}',
        body_type=BodyType.JSON,
    )
