"""Tests for the batch endpoint HTTP client."""

import json

import httpx
import pytest

from fieldsync.client.api import (
    APIError,
    AuthenticationError,
    MalformedResponseError,
    RateLimitError,
    RequestEncodingError,
    SyncClient,
    SyncResult,
)
from fieldsync.core.config import ServerConfig
from fieldsync.core.types import VerdictStatus

BATCH_URL = "http://test/api/v1/sync/batch"

CHANGE = {
    "type": "assessment",
    "action": "create",
    "data": {"site": "north"},
    "offlineId": "q-1",
    "versionNumber": 1,
    "entityUuid": "e-1",
}


def make_config(server_url: str = "http://test", token: str = "token123") -> ServerConfig:
    """Create a ServerConfig for testing."""
    return ServerConfig(server_url=server_url, token=token)


class TestSyncResult:
    """Tests for SyncResult."""

    def test_from_dict(self) -> None:
        """Should parse a full verdict entry."""
        result = SyncResult.from_dict(
            {
                "offlineId": "q-1",
                "serverId": "srv-9",
                "status": "conflict",
                "message": "version mismatch",
                "conflictData": {"serverVersion": 4},
            }
        )

        assert result.offline_id == "q-1"
        assert result.server_id == "srv-9"
        assert result.status is VerdictStatus.CONFLICT
        assert result.message == "version mismatch"
        assert result.conflict_data == {"serverVersion": 4}

    def test_from_dict_minimal(self) -> None:
        """serverId, message and conflictData are optional."""
        result = SyncResult.from_dict({"offlineId": "q-1", "status": "failed"})

        assert result.server_id == ""
        assert result.message is None
        assert result.conflict_data is None

    @pytest.mark.parametrize(
        "entry",
        [
            ["q-1", "success"],
            {"status": "success"},
            {"offlineId": "", "status": "success"},
            {"offlineId": "q-1", "status": "accepted"},
        ],
    )
    def test_from_dict_rejects_malformed(self, entry: object) -> None:
        with pytest.raises(ValueError):
            SyncResult.from_dict(entry)

    def test_to_dict_omits_empty_fields(self) -> None:
        """Optional fields only appear when set."""
        result = SyncResult("q-1", "srv-1", VerdictStatus.SUCCESS)
        assert result.to_dict() == {"offlineId": "q-1", "serverId": "srv-1", "status": "success"}


class TestSyncClient:
    """Tests for SyncClient."""

    def test_health_check_success(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return True when server is healthy."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        with SyncClient(make_config()) as client:
            assert client.health_check() is True

    def test_health_check_failure(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False when server is down."""
        httpx_mock.add_response(url="http://test/health", status_code=503)

        with SyncClient(make_config()) as client:
            assert client.health_check() is False

    def test_health_check_unreachable(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Connection errors mean unhealthy, not an exception."""
        httpx_mock.add_exception(httpx.ConnectError("no route to host"))

        with SyncClient(make_config()) as client:
            assert client.health_check() is False

    def test_push_batch(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should post the changes and parse the verdicts."""
        httpx_mock.add_response(
            url=BATCH_URL,
            method="POST",
            json=[{"offlineId": "q-1", "serverId": "srv-1", "status": "success"}],
        )

        with SyncClient(make_config()) as client:
            results = client.push_batch([CHANGE])

        assert results == [SyncResult("q-1", "srv-1", VerdictStatus.SUCCESS)]
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer token123"
        assert json.loads(request.content) == {"changes": [CHANGE]}
        assert request.headers["Content-Type"] == "application/json"

    def test_non_finite_change_is_not_sent(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """NaN cannot be encoded as JSON; nothing reaches the server."""
        change = {**CHANGE, "data": {"score": float("nan")}}

        with SyncClient(make_config()) as client:
            with pytest.raises(RequestEncodingError, match="Cannot encode"):
                client.push_batch([change])

        assert httpx_mock.get_requests() == []
        assert issubclass(RequestEncodingError, APIError)

    def test_no_token_no_auth_header(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=BATCH_URL, json=[])

        with SyncClient(make_config(token="")) as client:
            assert client.push_batch([]) == []

        assert "Authorization" not in httpx_mock.get_requests()[0].headers

    def test_authentication_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise AuthenticationError on 401."""
        httpx_mock.add_response(url=BATCH_URL, status_code=401)

        with SyncClient(make_config()) as client:
            with pytest.raises(AuthenticationError):
                client.push_batch([CHANGE])

    def test_rate_limit_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise RateLimitError on 429 with the server's detail."""
        httpx_mock.add_response(url=BATCH_URL, status_code=429, json={"detail": "slow down"})

        with SyncClient(make_config()) as client:
            with pytest.raises(RateLimitError, match="slow down") as exc_info:
                client.push_batch([CHANGE])

        assert exc_info.value.status_code == 429

    def test_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise APIError carrying the status code."""
        httpx_mock.add_response(url=BATCH_URL, status_code=500, json={"detail": "database down"})

        with SyncClient(make_config()) as client:
            with pytest.raises(APIError, match="database down") as exc_info:
                client.push_batch([CHANGE])

        assert exc_info.value.status_code == 500

    @pytest.mark.parametrize(
        ("body", "match"),
        [
            (b"<html>oops</html>", "invalid JSON"),
            (b'{"results": []}', "expected a list"),
            (b'[{"offlineId": "q-1", "status": "maybe"}]', "malformed verdict"),
        ],
    )
    def test_malformed_response(self, httpx_mock, body: bytes, match: str) -> None:  # type: ignore[no-untyped-def]
        """Bodies outside the verdict contract raise MalformedResponseError."""
        httpx_mock.add_response(url=BATCH_URL, content=body)

        with SyncClient(make_config()) as client:
            with pytest.raises(MalformedResponseError, match=match):
                client.push_batch([CHANGE])

    def test_timeout_propagates(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Transport errors surface as httpx exceptions."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with SyncClient(make_config()) as client:
            with pytest.raises(httpx.TimeoutException):
                client.push_batch([CHANGE])

    def test_injected_client_gets_auth_header(self) -> None:
        """A pre-built client is reused with the device token added."""
        http_client = httpx.Client(base_url="http://test")
        client = SyncClient(make_config(), http_client=http_client)

        assert http_client.headers["Authorization"] == "Bearer token123"
        client.close()
        assert http_client.is_closed
