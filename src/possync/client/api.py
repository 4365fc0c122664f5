"""HTTP client for the remote sync endpoint.

This module provides:
- HTTPRemoteEndpoint: exchanges queue batches with the remote over HTTP
- APIError / AuthenticationError: HTTP level failures

The remote streams its answers as NDJSON, one line per entry, in the order
it applied them. Lines received before the connection drops are yielded to
the dispatcher, which keeps them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from typing import Any

import httpx

from possync.client.sync.types import (
    EntryResponse,
    OutboundEntry,
    TransientTransportError,
    TransportError,
    response_from_dict,
)
from possync.core.config import ServerConfig

logger = logging.getLogger(__name__)

# Status codes worth retrying later
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class APIError(TransportError):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


def _error_detail(response: httpx.Response, default: str) -> str:
    try:
        detail = response.json().get("detail", default)
    except (ValueError, AttributeError):
        return default
    return str(detail)


class HTTPRemoteEndpoint:
    """Remote endpoint reached over HTTP(S)."""

    def __init__(
        self,
        config: ServerConfig,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the endpoint.

        Args:
            config: Server URL, token and timeouts.
            client: Preconfigured client (tests pass a TestClient here).
        """
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        if client is None:
            client = httpx.Client(
                base_url=config.server_url,
                timeout=config.timeout,
                verify=config.verify_ssl,
                headers=headers,
            )
        else:
            client.headers.update(headers)
        self._client = client

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPRemoteEndpoint:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise the matching exception for an error status."""
        if response.status_code in (401, 403):
            response.read()
            raise AuthenticationError(
                _error_detail(response, "Invalid or expired token"), response.status_code
            )
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientTransportError(
                f"Remote answered HTTP {response.status_code}, retry later"
            )
        if response.status_code >= 400:
            response.read()
            raise APIError(_error_detail(response, "Unknown error"), response.status_code)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the remote is reachable and healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Sync exchange ===

    def exchange(
        self,
        organization_id: str,
        entries: Sequence[OutboundEntry],
        client_id: str | None = None,
    ) -> Iterator[EntryResponse]:
        """Send a batch and yield the per-entry responses as they arrive.

        Raises:
            TransientTransportError: On network failure, timeout, a 5xx/429
                status or a stream that breaks off.
            AuthenticationError: If the token is refused.
            APIError: On any other error status or an unreadable response.
        """
        body: dict[str, Any] = {
            "client_id": client_id,
            "entries": [entry.to_dict() for entry in entries],
        }
        url = f"/api/organizations/{organization_id}/sync"
        try:
            with self._client.stream("POST", url, json=body) as response:
                self._handle_response(response)
                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    yield self._parse_line(line)
        except httpx.TransportError as e:
            raise TransientTransportError(f"Connection to remote failed: {e}") from e

    def _parse_line(self, line: str) -> EntryResponse:
        try:
            return response_from_dict(json.loads(line))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable response line from remote: %r", line[:200])
            raise APIError(f"Unreadable response from remote: {e}") from e
