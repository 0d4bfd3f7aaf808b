"""Internal data models for postpro.

All models use Pydantic v2. Requests and responses mirror what the editor
stores; transport models describe the narrow seam to the HTTP layer.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Variables
# =============================================================================


class VariableScope(str, Enum):
    """Variable namespaces, listed from lowest to highest lookup precedence."""

    GLOBAL = "global"
    COLLECTION = "collection"
    ENVIRONMENT = "environment"
    LOCAL = "local"  # In-process only, never persisted


class Variable(BaseModel):
    """One named value inside a scope."""

    model_config = ConfigDict(extra="forbid")

    value: str = Field(description="Variable value")
    description: str = Field(default="", description="Free-form description")


class Environment(BaseModel):
    """A named set of environment-scoped variables."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Environment identifier")
    name: str = Field(default="", description="Display name")
    variables: dict[str, Variable] = Field(default_factory=dict)


# =============================================================================
# Authentication
# =============================================================================


class NoAuth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["none"] = "none"


class BasicAuth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["basic"] = "basic"
    username: str = ""
    password: str = ""


class BearerAuth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["bearer"] = "bearer"
    token: str = ""


class ApiKeyAuth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["apikey"] = "apikey"
    key: str = ""
    value: str = ""
    add_to: Literal["header", "query"] = "header"


class OAuth2Auth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["oauth2"] = "oauth2"
    access_token: str = ""
    token_type: str = "Bearer"


AuthSpec = Annotated[
    Union[NoAuth, BasicAuth, BearerAuth, ApiKeyAuth, OAuth2Auth],
    Field(discriminator="type"),
]


# =============================================================================
# Requests
# =============================================================================


class BodyType(str, Enum):
    """How the request body is encoded before transport."""

    NONE = "none"
    RAW = "raw"
    JSON = "json"
    FORM_DATA = "form-data"
    URLENCODED = "urlencoded"


class TestResult(BaseModel):
    """Outcome of one test command or one pm.test() call."""

    __test__ = False  # Not a pytest test class

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Literal command line or pm.test() name")
    passed: bool
    error: str | None = Field(default=None, description="Failure message")


class RequestExecution(BaseModel):
    """Snapshot of the processed request from the last successful send."""

    model_config = ConfigDict(extra="forbid")

    timestamp: str
    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: str | dict[str, Any] | None = None
    auth: AuthSpec = Field(default_factory=NoAuth)
    body_type: BodyType = BodyType.NONE
    pre_request_script: str = ""


class ResponseExecution(BaseModel):
    """Snapshot of the processed response from the last successful send."""

    model_config = ConfigDict(extra="forbid")

    timestamp: str
    status: int
    duration: float
    size: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    test_results: list[TestResult] = Field(default_factory=list)


class RequestDefinition(BaseModel):
    """A request as authored in the editor.

    The pipeline never mutates a stored definition while sending; it works on
    a deep copy. Only last_*_execution metadata is written back afterwards.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Unique identifier")
    name: str = Field(default="", description="Display name")
    method: str = Field(default="GET")
    url: str = Field(default="")
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: str | dict[str, Any] | None = None
    body_type: BodyType = BodyType.NONE
    auth: AuthSpec = Field(default_factory=NoAuth)
    pre_request_script: str = ""
    test_script: str = ""
    folder: str = ""
    description: str = ""
    last_request_execution: RequestExecution | None = None
    last_response_execution: ResponseExecution | None = None


class Collection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    description: str = ""
    requests: list[RequestDefinition] = Field(default_factory=list)


class Scenario(BaseModel):
    """An ordered list of requests run one after another."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    description: str = ""
    requests: list[RequestDefinition] = Field(default_factory=list)


# =============================================================================
# Transport seam
# =============================================================================


class TransportRequest(BaseModel):
    """Fully built request handed to the transport.

    content and form_fields are mutually exclusive; form_fields are sent as
    multipart text fields with a transport-chosen boundary.
    """

    model_config = ConfigDict(extra="forbid")

    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    content: str | None = None
    form_fields: dict[str, str] | None = None


class RawResponse(BaseModel):
    """What the transport hands back before normalization."""

    model_config = ConfigDict(extra="forbid")

    status: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body_text: str = ""
    elapsed_ms: float = Field(default=0.0, description="Wall-clock time of the call")


class ProcessedResponse(BaseModel):
    """Normalized, immutable view of a response used by the test stage.

    Header names keep their original case; use header() for lookups.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body_text: str = ""
    body: Any = None
    duration: float = Field(default=0.0, description="Milliseconds")
    size: int = Field(default=0, description="Body size in bytes")

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class HistoryItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    timestamp: str
    request: RequestDefinition
    response: ProcessedResponse
    test_results: list[TestResult] = Field(default_factory=list)


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class ClientSettings(BaseModel):
    """Client-wide settings."""

    model_config = ConfigDict(extra="forbid")

    request_timeout_ms: int = Field(default=30000, gt=0)
    max_history_items: int = Field(default=100, gt=0)
    follow_redirects: bool = True
    validate_ssl: bool = True


class WorkspaceConfig(BaseModel):
    """Top-level workspace file structure."""

    model_config = ConfigDict(extra="forbid")

    settings: ClientSettings = Field(default_factory=ClientSettings)
    globals: dict[str, str] = Field(default_factory=dict)
    environments: list[Environment] = Field(default_factory=list)
    active_environment: str | None = None
    collection_variables: dict[str, dict[str, str]] = Field(
        default_factory=dict, description="Collection id -> variables"
    )
    collections: list[Collection | str] = Field(
        default_factory=list, description="Inline collections or paths to JSON/YAML files"
    )
    scenarios: list[Scenario | str] = Field(default_factory=list)
    storage_dir: str | None = Field(
        default=None, description="Directory for persisted variables and history"
    )
