"""Common HTTP plumbing for provider backends."""

from __future__ import annotations

import logging
import threading
from typing import Any

import httpx

from ..exceptions import (
    AuthError,
    CloudSyncError,
    InvalidResponseError,
    NetworkError,
    RateLimitError,
    RemoteNotFoundError,
    RemotePermissionError,
    TransientError,
)
from .base import StorageBackend

logger = logging.getLogger(__name__)


class HttpBackend(StorageBackend):
    """Base class for backends talking to a JSON REST API with a bearer token.

    Requests are not retried here. Errors are mapped onto the cloudsync
    exception hierarchy so the engine can decide what to retry.
    """

    api_url: str = ""

    def __init__(self, access_token: str, timeout: float = 30.0):
        """Initialize the backend.

        Args:
            access_token: OAuth access token for the account
            timeout: Request timeout in seconds (default: 30.0)
        """
        if not access_token:
            raise AuthError("No access token provided")
        self.access_token = access_token
        self.timeout = timeout
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
        )

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = self._build_client()
            return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        with self._client_lock:
            if self._client is not None and not self._client.is_closed:
                self._client.close()
            self._client = None

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.api_url}/{endpoint.lstrip('/')}"

    def _map_http_error(self, e: httpx.HTTPStatusError) -> CloudSyncError:
        """Translate an HTTP error status into a cloudsync exception."""
        status_code = e.response.status_code

        if status_code == 401:
            return AuthError("Access token is invalid or expired - please log in again")
        if status_code == 403:
            return RemotePermissionError("Access forbidden - check your permissions")
        if status_code == 404:
            return RemoteNotFoundError("Resource not found")
        if status_code == 429:
            retry_after = e.response.headers.get("Retry-After")
            delay = float(retry_after) if retry_after and retry_after.isdigit() else None
            return RateLimitError(
                "Rate limit exceeded - please try again later", retry_after=delay
            )

        error_msg = f"API request failed with status {status_code}"
        # Try to extract more details from response body
        try:
            if e.response.content:
                error_data = e.response.json()
                if isinstance(error_data, dict):
                    detail = error_data.get("error") or error_data.get("message")
                    if isinstance(detail, dict):
                        detail = detail.get("message")
                    if detail:
                        error_msg = f"{error_msg}: {detail}"
        except ValueError:
            pass

        if 500 <= status_code < 600:
            return TransientError(error_msg)
        return CloudSyncError(error_msg)

    def _send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send a request and raise mapped errors for failures."""
        url = self._url(endpoint)
        client = self._get_client()
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.debug(f"{method} {url} failed with {e.response.status_code}")
            raise self._map_http_error(e) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error: {e}") from e

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request and decode the JSON body.

        Returns:
            Response JSON data ({} for empty bodies)
        """
        response = self._send(method, endpoint, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"Invalid JSON response from {self.name}"
            ) from e
