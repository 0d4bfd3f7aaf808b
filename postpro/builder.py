"""Request Builder - Turns a resolved request into transport parameters.

Injects auth headers and encodes the body according to body_type. Every
failure is raised synchronously, before any network I/O.
"""

from __future__ import annotations

import base64
import json
from typing import Any
from urllib.parse import urlencode

import httpx

from postpro.errors import ValidationError
from postpro.models import (
    ApiKeyAuth,
    AuthSpec,
    BasicAuth,
    BearerAuth,
    BodyType,
    OAuth2Auth,
    RequestDefinition,
    TransportRequest,
)


def _has_header(headers: dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def apply_auth(headers: dict[str, str], auth: AuthSpec) -> None:
    """Add auth headers in place. Query-string API keys are handled earlier."""
    if isinstance(auth, BasicAuth):
        if auth.username and auth.password:
            credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"
    elif isinstance(auth, BearerAuth):
        if auth.token:
            headers["Authorization"] = f"Bearer {auth.token}"
    elif isinstance(auth, ApiKeyAuth):
        if auth.key and auth.value and auth.add_to == "header":
            headers[auth.key] = auth.value
    elif isinstance(auth, OAuth2Auth):
        if auth.access_token:
            headers["Authorization"] = f"{auth.token_type or 'Bearer'} {auth.access_token}"


def _form_fields(body: Any) -> dict[str, str]:
    """Accept a mapping, or a string holding a JSON object."""
    if body is None or body == "":
        return {}
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError as e:
            raise ValidationError(f"Form body must be a JSON object: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Form body must be a mapping of field names to values")
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in body.items()}


class RequestBuilder:
    """Builds TransportRequest objects.

    Usage:
        transport_request = RequestBuilder().build(resolved_request)
    """

    def build(self, request: RequestDefinition) -> TransportRequest:
        """Build transport parameters.

        Raises:
            ValidationError: If the URL is not absolute, a json body does not
                parse, or a form body is not a mapping.
        """
        method = (request.method or "GET").upper()
        self._check_url(request.url)
        headers = dict(request.headers)
        apply_auth(headers, request.auth)

        content: str | None = None
        form_fields: dict[str, str] | None = None
        body_type = request.body_type

        if body_type == BodyType.RAW:
            content = request.body if isinstance(request.body, str) else self._dump(request.body)

        elif body_type == BodyType.JSON:
            raw_text = request.body.strip() if isinstance(request.body, str) else self._dump(request.body)
            if raw_text:
                try:
                    json.loads(raw_text)
                except ValueError as e:
                    raise ValidationError(f"Invalid JSON body: {e}") from e
                content = raw_text
                if not _has_header(headers, "Content-Type"):
                    headers["Content-Type"] = "application/json"

        elif body_type == BodyType.FORM_DATA:
            form_fields = _form_fields(request.body)
            # Transport sets its own multipart boundary
            headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}

        elif body_type == BodyType.URLENCODED:
            content = urlencode(_form_fields(request.body))
            headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        return TransportRequest(
            method=method,
            url=request.url,
            headers=headers,
            content=content,
            form_fields=form_fields,
        )

    @staticmethod
    def _check_url(url: str) -> None:
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise ValidationError(f"Invalid URL: {url}") from e
        if not parsed.scheme or not parsed.host:
            raise ValidationError(f"Invalid URL: {url}")

    @staticmethod
    def _dump(body: Any) -> str:
        if body is None:
            return ""
        return json.dumps(body)
