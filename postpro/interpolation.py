"""Template Interpolator - Rewrites {{name}} markers using the variable store.

Substitution is a single left-to-right pass. Values pulled from the store
are inserted as-is and never rescanned, and unknown names are left in place
with their braces.
"""

from __future__ import annotations

import re
from typing import Any

import httpx

from postpro.errors import ValidationError
from postpro.models import ApiKeyAuth, RequestDefinition
from postpro.variables import VariableStore

TEMPLATE_RE = re.compile(r"\{\{([^}]+)\}\}")


class TemplateInterpolator:
    """Expands {{identifier}} markers in strings and nested structures."""

    def __init__(self, store: VariableStore) -> None:
        self._store = store

    def interpolate(self, text: str) -> str:
        if not isinstance(text, str):
            return text

        def replace(match: re.Match[str]) -> str:
            value = self._store.get(match.group(1).strip())
            return match.group(0) if value is None else value

        return TEMPLATE_RE.sub(replace, text)

    def deep_interpolate(self, value: Any) -> Any:
        """Interpolate strings anywhere inside lists and dicts (keys too)."""
        if isinstance(value, str):
            return self.interpolate(value)
        if isinstance(value, list):
            return [self.deep_interpolate(item) for item in value]
        if isinstance(value, dict):
            return {
                self.interpolate(key) if isinstance(key, str) else key: self.deep_interpolate(item)
                for key, item in value.items()
            }
        return value

    def resolve_request(self, request: RequestDefinition) -> RequestDefinition:
        """Return an interpolated copy with params merged into the URL.

        Raises:
            ValidationError: If the URL is empty or cannot be parsed.
        """
        resolved = request.model_copy(deep=True)
        resolved.url = self.interpolate(resolved.url)
        resolved.headers = self.deep_interpolate(resolved.headers)
        params = self.deep_interpolate(resolved.params)
        resolved.auth = type(resolved.auth).model_validate(
            self.deep_interpolate(resolved.auth.model_dump())
        )
        if resolved.body:
            if isinstance(resolved.body, str):
                resolved.body = self.interpolate(resolved.body)
            else:
                resolved.body = self.deep_interpolate(resolved.body)

        if not resolved.url or not resolved.url.strip():
            raise ValidationError("URL is required")

        try:
            url = httpx.URL(resolved.url.strip())
        except httpx.InvalidURL as e:
            raise ValidationError(f"Invalid URL: {resolved.url}") from e
        if not url.scheme or not url.host:
            raise ValidationError(f"Invalid URL: {resolved.url}")

        for key, value in params.items():
            if key:
                url = url.copy_set_param(key, str(value))

        # API key in the query string is applied last so it wins over params
        auth = resolved.auth
        if isinstance(auth, ApiKeyAuth) and auth.add_to == "query" and auth.key and auth.value:
            url = url.copy_set_param(auth.key, auth.value)

        resolved.url = str(url)
        resolved.params = {}
        return resolved
