"""Error taxonomy shared by every pipeline stage.

Everything raised before the network call aborts the send with a single
user-visible error. Assertion failures never leave the test stage; they are
converted into failed TestResults there.
"""

from __future__ import annotations

from dataclasses import dataclass


class PostproError(Exception):
    """Base class for postpro errors."""


class ConfigError(PostproError):
    """Raised when workspace configuration loading fails."""


class ValidationError(PostproError):
    """Request cannot be built (bad URL, malformed JSON body, ...)."""


class UndefinedVariableError(PostproError):
    """A script or reference named a variable that does not resolve."""

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        super().__init__(message or f"Variable '{name}' is not defined")


class TransportError(PostproError):
    """Base class for failures of the network call itself."""


class NetworkError(TransportError):
    """Connection failure, protocol error, or a response with status 0."""


class TransportTimeoutError(TransportError):
    """The request did not complete within its timeout."""


class AssertionFailure(PostproError):
    """A sandbox assertion did not hold."""


class ScriptSyntaxError(PostproError):
    """Test script could not be parsed."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"{message} (line {line})"
        super().__init__(message)


class ScriptRuntimeError(PostproError):
    """Test script failed while running (unknown name, bad call, ...)."""


class PipelineBusyError(PostproError):
    """A send was started while another one is still in flight."""


class SendAborted(PostproError):
    """The pipeline stopped before producing a response.

    Attributes:
        stage: Pipeline state in which the abort happened.
        cause: The underlying error.
    """

    def __init__(self, stage: str, cause: Exception) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Request failed during {stage}: {cause}")


@dataclass(frozen=True)
class ScriptWarning:
    """Non-fatal problem with a script line. Logged, execution continues."""

    line: str
    message: str

    def __str__(self) -> str:
        return f"{self.message}: {self.line}"
