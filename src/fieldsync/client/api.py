"""HTTP client for the FieldSync batch endpoint.

This module provides:
- SyncClient: HTTP client for communicating with the remote authority
- SyncResult: Per-change verdict returned by the batch endpoint
- Health check used by connectivity probing
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from fieldsync.core.config import BATCH_PATH, HEALTH_PATH, ServerConfig
from fieldsync.core.types import VerdictStatus

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class RateLimitError(APIError):
    """Server asked the device to slow down."""


class MalformedResponseError(APIError):
    """Response body does not follow the verdict contract."""


class RequestEncodingError(APIError):
    """A batch could not be encoded as strict JSON."""


@dataclass
class SyncResult:
    """Verdict for one change, as returned by the batch endpoint.

    Attributes:
        offline_id: The queue item's uuid.
        server_id: Identifier assigned by the server ("" if none).
        status: success, conflict or failed.
        message: Optional human-readable detail.
        conflict_data: Server copy of the record for conflicts.
    """

    offline_id: str
    server_id: str
    status: VerdictStatus
    message: str | None = None
    conflict_data: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> SyncResult:
        """Create from API response dictionary.

        Raises:
            ValueError: If the entry does not follow the verdict contract.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Verdict must be an object, got {type(data).__name__}")
        offline_id = data.get("offlineId")
        if not isinstance(offline_id, str) or not offline_id:
            raise ValueError("Verdict is missing offlineId")
        try:
            status = VerdictStatus(data.get("status"))
        except ValueError:
            raise ValueError(f"Unknown verdict status: {data.get('status')!r}") from None
        message = data.get("message")
        return cls(
            offline_id=offline_id,
            server_id=str(data.get("serverId") or ""),
            status=status,
            message=str(message) if message is not None else None,
            conflict_data=data.get("conflictData"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "offlineId": self.offline_id,
            "serverId": self.server_id,
            "status": self.status.value,
        }
        if self.message is not None:
            result["message"] = self.message
        if self.conflict_data is not None:
            result["conflictData"] = self.conflict_data
        return result


class SyncClient:
    """HTTP client for the FieldSync batch endpoint."""

    def __init__(
        self,
        config: ServerConfig,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the sync client.

        Args:
            config: Server configuration (URL, token, timeout).
            http_client: Optional pre-built client (e.g. a test client);
                auth headers are added to it.
        """
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        if http_client is None:
            http_client = httpx.Client(
                base_url=config.server_url,
                timeout=config.timeout,
                verify=config.verify_ssl,
            )
        http_client.headers.update(headers)
        self._client = http_client

    @property
    def config(self) -> ServerConfig:
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> SyncClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @staticmethod
    def _error_detail(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return default
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or default)
        return default

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code == 429:
            raise RateLimitError(self._error_detail(response, "Rate limit exceeded"), 429)
        if response.status_code >= 400:
            detail = self._error_detail(response, response.reason_phrase or "Unknown error")
            raise APIError(f"Sync API error: {response.status_code} {detail}", response.status_code)
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get(HEALTH_PATH)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    # === Batch sync ===

    def push_batch(self, changes: list[dict[str, Any]]) -> list[SyncResult]:
        """Send a batch of queued changes and return the per-change verdicts.

        Args:
            changes: Changes in wire format (QueueItem.to_change()).

        Returns:
            One verdict per change the server processed, in any order.

        Raises:
            RequestEncodingError: If a change holds NaN, Infinity or a non-JSON value.
            APIError: On non-2xx responses or a malformed body.
            httpx.HTTPError: On connection errors and timeouts.
        """
        try:
            content = json.dumps({"changes": changes}, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise RequestEncodingError(f"Cannot encode sync batch: {e}") from e

        logger.debug("POST %s with %d changes", BATCH_PATH, len(changes))
        response = self._handle_response(
            self._client.post(
                BATCH_PATH, content=content, headers={"Content-Type": "application/json"}
            )
        )
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Sync API returned invalid JSON: {e}") from e
        if not isinstance(body, list):
            raise MalformedResponseError(
                f"Sync API returned {type(body).__name__}, expected a list of verdicts"
            )
        try:
            return [SyncResult.from_dict(entry) for entry in body]
        except ValueError as e:
            raise MalformedResponseError(f"Sync API returned a malformed verdict: {e}") from e
