"""Outbound HTTP adapter over ``httpx.AsyncClient``.

This is the one place where raw httpx failures become the structured error
taxonomy in ``errors``. Anything the retry executor needs to classify
(transient transport failure, HTTP status) is attached here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

import httpx

from terminology_mcp_server.errors import (
    NotFoundError,
    RateLimitError,
    TerminologyApiError,
    UpstreamApiError,
    UpstreamTransportError,
)

logger = logging.getLogger(__name__)

_BODY_PREVIEW = 500


class HttpTransport:
    """Async JSON-over-HTTP transport for one upstream.

    Args:
        name: Upstream label used in logs and error messages.
        base_url: Prefix for relative request paths.
        timeout: Request timeout in seconds.
        headers: Default headers sent with every request.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        name: str,
        base_url: str = "",
        timeout: float = 30.0,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=dict(headers or {}),
            transport=transport,
        )

    async def get_json(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """GET ``url`` and decode the JSON body.

        Raises:
            NotFoundError: On 404.
            RateLimitError: On 429.
            UpstreamApiError: On other non-2xx statuses or malformed JSON.
            UpstreamTransportError: On timeouts and connection failures.
        """
        return await self._send("GET", url, params=params, headers=headers)

    async def post_form(
        self,
        url: str,
        data: Mapping[str, str],
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """POST a urlencoded form and decode the JSON body."""
        return await self._send("POST", url, data=data, headers=headers)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    # -- Internal ----------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        started = time.perf_counter()
        try:
            response = await self._http.request(
                method,
                url,
                params=_clean_params(params),
                data=data,
                headers=headers,
            )
        except httpx.TransportError as exc:
            logger.warning("[%s] %s %s failed: %r", self.name, method, url, exc)
            raise UpstreamTransportError(
                f"{self.name} request failed: {exc.__class__.__name__}: {exc}"
            ) from exc

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "[%s] %s %s -> %d (%.0fms)",
            self.name,
            method,
            response.request.url.path,
            response.status_code,
            elapsed_ms,
        )
        if not response.is_success:
            raise self._map_http_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamApiError(
                f"{self.name} returned malformed JSON",
                status_code=response.status_code,
                details=response.text[:_BODY_PREVIEW],
            ) from exc

    def _map_http_error(self, response: httpx.Response) -> TerminologyApiError:
        """Map an HTTP error response to the matching exception."""
        status = response.status_code
        body = response.text[:_BODY_PREVIEW]
        if status == 404:
            return NotFoundError(
                f"{self.name}: resource not found", status_code=status, details=body
            )
        if status == 429:
            return RateLimitError(
                f"{self.name}: rate limit exceeded", status_code=status, details=body
            )
        return UpstreamApiError(
            f"{self.name} API error {status}: {body}",
            status_code=status,
            details=body,
        )


def _clean_params(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop None values; httpx would otherwise send them as empty strings."""
    if params is None:
        return None
    return {key: value for key, value in params.items() if value is not None}
