"""Pre-request Interpreter - Line commands that edit the outgoing request.

One command per line. Blank lines and lines starting with // are skipped.
The command is the text before the first space; everything after it is
the argument. Commands run in order against a working copy, so later
commands see what earlier ones changed.

    setUrl https://api.example.com/users
    setUrlWithVar apiUrl
    addHeader X-Trace abc 123
    addHeaderWithVar Authorization token
    setBody {"name": "alice"}
    setBodyWithVar payload
    removeHeader Content-Type

Malformed or unknown lines become warnings. A variable that does not
resolve raises UndefinedVariableError and stops the script.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from postpro.errors import ScriptWarning
from postpro.models import RequestDefinition
from postpro.session import Session

logger = structlog.get_logger(__name__)


@dataclass
class PreRequestResult:
    request: RequestDefinition
    warnings: list[ScriptWarning] = field(default_factory=list)


def split_command(line: str) -> tuple[str, str] | None:
    """Split 'cmd rest of line' into ('cmd', 'rest of line').

    Returns None for a line with no argument at all.
    """
    index = line.find(" ")
    if index == -1:
        return None
    return line[:index], line[index + 1 :].strip()


def _split_pair(argument: str) -> tuple[str, str] | None:
    index = argument.find(" ")
    if index == -1:
        return None
    return argument[:index], argument[index + 1 :].strip()


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _has_content_type(headers: dict[str, str]) -> bool:
    return any(name.lower() == "content-type" for name in headers)


class PreRequestInterpreter:
    """Runs a pre-request script against a copy of a request."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._commands: dict[str, Callable[[RequestDefinition, str, str], ScriptWarning | None]] = {
            "setUrl": self._set_url,
            "setUrlWithVar": self._set_url_with_var,
            "addHeader": self._add_header,
            "addHeaderWithVar": self._add_header_with_var,
            "setBody": self._set_body,
            "setBodyWithVar": self._set_body_with_var,
            "removeHeader": self._remove_header,
        }

    def run(self, script: str, request: RequestDefinition) -> PreRequestResult:
        """Execute script against a deep copy of request.

        Raises:
            UndefinedVariableError: If a *WithVar command names a variable
                that does not resolve. Nothing after that line runs.
        """
        working = request.model_copy(deep=True)
        result = PreRequestResult(request=working)
        if not script:
            return result

        for raw_line in script.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("//"):
                continue

            parts = split_command(line)
            if parts is None:
                result.warnings.append(self._warn(line, "Invalid command format"))
                continue

            command, argument = parts
            handler = self._commands.get(command)
            if handler is None:
                result.warnings.append(self._warn(line, f"Unknown command: {command}"))
                continue

            warning = handler(working, argument, line)
            if warning is not None:
                result.warnings.append(warning)

        return result

    def _warn(self, line: str, message: str) -> ScriptWarning:
        logger.warning("pre_request.skipped_line", line=line, reason=message)
        return ScriptWarning(line=line, message=message)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _set_url(self, request: RequestDefinition, argument: str, line: str) -> ScriptWarning | None:
        if not argument:
            return self._warn(line, "setUrl requires a URL")
        request.url = argument
        return None

    def _set_url_with_var(
        self, request: RequestDefinition, argument: str, line: str
    ) -> ScriptWarning | None:
        if not argument:
            return self._warn(line, "setUrlWithVar requires a variable name")
        request.url = _stringify(self._session.resolve(argument))
        return None

    def _add_header(self, request: RequestDefinition, argument: str, line: str) -> ScriptWarning | None:
        pair = _split_pair(argument)
        if pair is None:
            return self._warn(line, "addHeader requires both header name and value")
        name, value = pair
        request.headers[name] = value
        return None

    def _add_header_with_var(
        self, request: RequestDefinition, argument: str, line: str
    ) -> ScriptWarning | None:
        pair = _split_pair(argument)
        if pair is None:
            return self._warn(line, "addHeaderWithVar requires both header name and variable name")
        name, variable = pair
        request.headers[name] = _stringify(self._session.resolve(variable))
        return None

    def _set_body(self, request: RequestDefinition, argument: str, line: str) -> ScriptWarning | None:
        if not argument:
            return self._warn(line, "setBody requires a body content")
        request.body = argument
        if not _has_content_type(request.headers):
            request.headers["Content-Type"] = "application/json"
        return None

    def _set_body_with_var(
        self, request: RequestDefinition, argument: str, line: str
    ) -> ScriptWarning | None:
        if not argument:
            return self._warn(line, "setBodyWithVar requires a variable name")
        request.body = _stringify(self._session.resolve(argument))
        return None

    def _remove_header(
        self, request: RequestDefinition, argument: str, line: str
    ) -> ScriptWarning | None:
        if not argument:
            return self._warn(line, "removeHeader requires a header name")
        target = argument.lower()
        request.headers = {k: v for k, v in request.headers.items() if k.lower() != target}
        return None
