"""References - Resolve ${"Collection"."Request"...} into earlier executions.

A reference walks into the last request or response recorded on a stored
request definition:

    ${"Users"."Login"."response"."headers"."X-Token"}
    ${"Users"."Login"."response"."body".jsonPath("$.data.token")}
    ${"Users"."Login"."request"."url"}

The first three segments pick collection (by name), request (by name) and
which execution to read. Remaining segments walk into it.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable

from jsonpath_ng import parse as jsonpath_parse
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from postpro.errors import UndefinedVariableError
from postpro.models import Collection

# "segment" (optionally dot-prefixed) or .jsonPath("expr")
_SEGMENT_RE = re.compile(r'\.?"([^"]+)"|\.jsonPath\("([^"]+)"\)')

_jsonpath_cache: dict[str, Any] = {}


class JsonPathSegment(str):
    """Marks a parsed .jsonPath("...") segment apart from quoted names."""


def is_reference(text: str) -> bool:
    return text.startswith("${") and text.endswith("}")


def parse_reference(reference: str) -> list[str]:
    """Split a reference into its segments.

    Raises:
        UndefinedVariableError: If the syntax is malformed or has fewer than
            four segments.
    """
    inner = reference[2:-1]
    parts: list[str] = []
    position = 0
    for match in _SEGMENT_RE.finditer(inner):
        if match.start() != position:
            raise UndefinedVariableError(
                reference, f"Invalid variable reference syntax: {inner[position:match.start()]}"
            )
        position = match.end()
        if match.group(1) is not None:
            parts.append(match.group(1))
        else:
            expr = match.group(2)
            if not expr.startswith("$"):
                expr = "$" + expr
            parts.append(JsonPathSegment(expr))

    if position < len(inner):
        raise UndefinedVariableError(
            reference, f"Invalid variable reference syntax: {inner[position:]}"
        )
    if len(parts) < 4:
        raise UndefinedVariableError(reference, f"Invalid variable reference syntax: {reference}")
    return parts


def _find_jsonpath(reference: str, body: Any, expr: str) -> Any:
    if expr not in _jsonpath_cache:
        try:
            _jsonpath_cache[expr] = jsonpath_parse(expr)
        except (JsonPathParserError, JsonPathLexerError) as e:
            raise UndefinedVariableError(reference, f"Invalid JSONPath '{expr}': {e}") from e

    matches = _jsonpath_cache[expr].find(body)
    if not matches:
        raise UndefinedVariableError(reference, f"JSONPath '{expr}' matched no value")
    return matches[0].value


def resolve_reference(reference: str, collections: Iterable[Collection]) -> Any:
    """Resolve a reference against the executions stored on collections.

    Raises:
        UndefinedVariableError: Naming the collection, request, execution,
            header, property or JSONPath that could not be found.
    """
    collection_name, request_name, kind, *path = parse_reference(reference)

    collection = next((c for c in collections if c.name == collection_name), None)
    if collection is None:
        raise UndefinedVariableError(reference, f"Collection '{collection_name}' not found")
    request = next((r for r in collection.requests if r.name == request_name), None)
    if request is None:
        raise UndefinedVariableError(reference, f"Request '{request_name}' not found")

    execution = (
        request.last_response_execution if kind == "response" else request.last_request_execution
    )
    if execution is None:
        raise UndefinedVariableError(reference, f"No {kind} execution recorded for '{request_name}'")

    value: Any = execution.model_dump(mode="json")
    i = 0
    while i < len(path):
        part = path[i]

        if part == "headers":
            if i + 1 >= len(path):
                raise UndefinedVariableError(reference, "Header name missing")
            name = path[i + 1].lower()
            headers = value.get("headers") if isinstance(value, dict) else None
            for key, header_value in (headers or {}).items():
                if key.lower() == name:
                    return header_value
            raise UndefinedVariableError(reference, f"Header '{path[i + 1]}' not found")

        if part == "body" and not isinstance(part, JsonPathSegment):
            body = value.get("body") if isinstance(value, dict) else None
            following = path[i + 1] if i + 1 < len(path) else None
            if following is None:
                return body
            value = _as_json(reference, body)
            if isinstance(following, JsonPathSegment):
                return _find_jsonpath(reference, value, following)
            i += 1
            continue

        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            raise UndefinedVariableError(reference, f"Property '{part}' not found")
        i += 1

    return value


def _as_json(reference: str, body: Any) -> Any:
    if not isinstance(body, str):
        return body
    try:
        return json.loads(body)
    except ValueError as e:
        raise UndefinedVariableError(reference, f"Body is not JSON: {e}") from e
