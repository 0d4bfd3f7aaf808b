"""Transport - Performs the network call for a built request.

A thin seam around httpx.Client. Everything before it produces a
TransportRequest; everything after it consumes a RawResponse.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from postpro.errors import NetworkError, TransportTimeoutError
from postpro.models import ClientSettings, RawResponse, TransportRequest

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_MS = 30000


def _sanitize_header_value(value: str) -> str:
    """Replace non-ASCII characters with '?'. Header values must be ASCII."""
    return value.encode("ascii", errors="replace").decode("ascii")


class TransportExecutor:
    """Sends TransportRequests over one httpx.Client.

    Usage:
        with TransportExecutor(settings) as executor:
            raw = executor.send(transport_request, timeout_ms=5000)

    A custom httpx transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or ClientSettings()
        self._client = httpx.Client(**self._build_client_kwargs(transport))

    def __enter__(self) -> "TransportExecutor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _build_client_kwargs(self, transport: httpx.BaseTransport | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "timeout": self._settings.request_timeout_ms / 1000,
            "follow_redirects": self._settings.follow_redirects,
        }
        if transport is not None:
            kwargs["transport"] = transport
        elif not self._settings.validate_ssl:
            kwargs["verify"] = False
        return kwargs

    def send(
        self,
        request: TransportRequest,
        timeout_ms: int | None = None,
    ) -> RawResponse:
        """Send a request and capture the raw response.

        Args:
            request: Fully built request.
            timeout_ms: Overrides the configured timeout for this call.

        Raises:
            TransportTimeoutError: If the call exceeds its timeout.
            NetworkError: On connection and protocol failures, or a status of 0.
        """
        timeout = (timeout_ms or self._settings.request_timeout_ms or DEFAULT_TIMEOUT_MS) / 1000
        headers = {key: _sanitize_header_value(value) for key, value in request.headers.items()}

        files: dict[str, tuple[None, str]] | None = None
        if request.form_fields:
            # (None, value) makes httpx send a plain multipart text field
            files = {name: (None, value) for name, value in request.form_fields.items()}

        logger.debug("transport.send", method=request.method, url=request.url)
        try:
            start_time = time.perf_counter()
            if files is not None:
                http_response = self._client.request(
                    method=request.method,
                    url=request.url,
                    headers=headers or None,
                    files=files,
                    timeout=timeout,
                )
            else:
                http_response = self._client.request(
                    method=request.method,
                    url=request.url,
                    headers=headers or None,
                    content=request.content,
                    timeout=timeout,
                )
            elapsed_ms = (time.perf_counter() - start_time) * 1000
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(f"Request timed out after {timeout:g}s: {e}") from e
        except httpx.ConnectError as e:
            raise NetworkError(f"Connection error: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request error: {e}") from e
        except UnicodeEncodeError as e:
            raise NetworkError(
                f"Encoding error: non-ASCII character {e.object[e.start:e.end]!r} "
                f"in header name or URL"
            ) from e

        if http_response.status_code == 0:
            raise NetworkError("Transport returned status 0")

        return self._convert_response(http_response, elapsed_ms)

    def _convert_response(self, response: httpx.Response, elapsed_ms: float) -> RawResponse:
        # Original name casing comes from the raw list; repeated headers are
        # joined the way browsers report them
        encoding = response.headers.encoding
        headers: dict[str, str] = {}
        for raw_key, raw_value in response.headers.raw:
            key, value = raw_key.decode(encoding), raw_value.decode(encoding)
            headers[key] = f"{headers[key]}, {value}" if key in headers else value

        return RawResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=headers,
            body_text=response.text,
            elapsed_ms=elapsed_ms,
        )
