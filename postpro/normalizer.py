"""Response Normalizer - Builds the immutable ProcessedResponse."""

from __future__ import annotations

import json
from typing import Any

from postpro.models import ProcessedResponse, RawResponse


def _content_type(headers: dict[str, str]) -> str:
    for key, value in headers.items():
        if key.lower() == "content-type":
            return value
    return ""


class ResponseNormalizer:
    """Converts RawResponse into ProcessedResponse. Never raises."""

    def normalize(self, raw: RawResponse, duration_ms: float | None = None) -> ProcessedResponse:
        """Normalize a raw response.

        Args:
            raw: Transport output.
            duration_ms: Overrides raw.elapsed_ms when given.

        Returns:
            ProcessedResponse whose body is parsed JSON when the content-type
            says application/json and the text parses, else the text itself.
        """
        body_text = raw.body_text or ""
        body: Any = body_text
        if "application/json" in _content_type(raw.headers).lower():
            try:
                body = json.loads(body_text)
            except ValueError:
                body = body_text

        return ProcessedResponse(
            status=raw.status,
            status_text=raw.status_text,
            headers=dict(raw.headers),
            body_text=body_text,
            body=body,
            duration=raw.elapsed_ms if duration_ms is None else duration_ms,
            size=len(body_text.encode("utf-8")),
        )
