"""
Integration tests for the HTTP handlers

The application is served with aiohttp's test server, with the connection service
replaced by a mock. Tests cover request validation, the user id header, and the mapping
of service failures to HTTP status codes.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from aiohttp import test_utils

from social.quotevote.podsync.app.config import MetricsClientAppKey
from social.quotevote.podsync.app.handlers.helpers import ConnectionServiceAppKey
from social.quotevote.podsync.app.server import build_web_app
from social.quotevote.podsync.errors import (
    ActivityLedgerConflict,
    ActivityLedgerDisabled,
    AuthorizationStateError,
    ConnectionNotFound,
    DiscoveryError,
    InvalidIssuer,
    PodRequestError,
    SyncError,
    TokenDecryptionError,
    TokenError,
)
from social.quotevote.podsync.service import PodConnectionService
from social.quotevote.podsync.sync.portable import (
    ActivityEvent,
    default_portable_state,
)

USER_HEADERS = {"X-User-Id": "user-1"}


@pytest.fixture
def mock_service():
    service = AsyncMock(spec=PodConnectionService)
    service.validate_key = Mock(return_value=True)
    return service


@pytest.fixture
def metrics_client():
    return Mock()


@pytest_asyncio.fixture
async def client(settings, mock_service, metrics_client):
    app = build_web_app(settings)
    app[MetricsClientAppKey] = metrics_client
    app[ConnectionServiceAppKey] = mock_service

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
class TestInternal:
    async def test_alive(self, client):
        resp = await client.get("/internal/alive")
        assert resp.status == 200
        assert await resp.text() == "Ok"

    async def test_ready(self, client):
        resp = await client.get("/internal/ready")
        assert resp.status == 200

    async def test_not_ready_without_key(self, client, mock_service):
        mock_service.validate_key.return_value = False

        resp = await client.get("/internal/ready")
        assert resp.status == 503

    async def test_request_metrics(self, client, metrics_client):
        await client.get("/internal/alive")

        metrics_client.increment.assert_any_call(
            "server.request.count",
            1,
            tag_dict={"path": "/internal/alive", "method": "GET", "status": 200},
        )


@pytest.mark.asyncio
class TestStart:
    async def test_requires_user(self, client, mock_service):
        resp = await client.post("/auth/solid/start", json={"issuer": "https://idp.example"})

        assert resp.status == 401
        assert await resp.json() == {"error": "Not Authorized"}
        mock_service.start_connect.assert_not_called()

    async def test_blank_user(self, client):
        resp = await client.post(
            "/auth/solid/start",
            json={"issuer": "https://idp.example"},
            headers={"X-User-Id": "  "},
        )
        assert resp.status == 401

    async def test_returns_authorization_url(self, client, mock_service):
        mock_service.start_connect.return_value = "https://idp.example/authorize?x=1"

        resp = await client.post(
            "/auth/solid/start",
            json={"issuer": " https://idp.example "},
            headers=USER_HEADERS,
        )

        assert resp.status == 200
        assert await resp.json() == {"authorizationUrl": "https://idp.example/authorize?x=1"}
        mock_service.start_connect.assert_awaited_once_with("user-1", "https://idp.example")

    async def test_missing_issuer(self, client):
        resp = await client.post("/auth/solid/start", json={}, headers=USER_HEADERS)

        assert resp.status == 400
        assert await resp.json() == {"error": "Missing required parameter: issuer"}

    async def test_invalid_json(self, client):
        resp = await client.post(
            "/auth/solid/start", data="not json", headers=USER_HEADERS
        )

        assert resp.status == 400
        assert (await resp.json())["error"] == "Request body must be a JSON object"

    async def test_invalid_issuer(self, client, mock_service):
        mock_service.start_connect.side_effect = InvalidIssuer("http://idp.example")

        resp = await client.post(
            "/auth/solid/start", json={"issuer": "http://idp.example"}, headers=USER_HEADERS
        )

        assert resp.status == 400
        assert "Invalid issuer URL" in (await resp.json())["error"]

    async def test_discovery_failure(self, client, mock_service, metrics_client):
        mock_service.start_connect.side_effect = DiscoveryError(
            "Issuer discovery failed for https://idp.example: 500"
        )

        resp = await client.post(
            "/auth/solid/start", json={"issuer": "https://idp.example"}, headers=USER_HEADERS
        )

        assert resp.status == 502
        assert (await resp.json())["error"].startswith("Issuer discovery failed")
        metrics_client.increment.assert_any_call(
            "server.upstream.error",
            1,
            tag_dict={"operation": "handle_solid_start", "error": "DiscoveryError"},
        )


@pytest.mark.asyncio
class TestCallback:
    async def test_completes_connection(self, client, mock_service):
        mock_service.finish_connect.return_value = {
            "webId": "https://alice.pod.example/profile/card#me",
            "issuer": "https://idp.example",
        }

        resp = await client.get(
            "/auth/solid/callback",
            params={"code": "c", "state": "s"},
            headers=USER_HEADERS,
        )

        assert resp.status == 200
        assert await resp.json() == {
            "success": True,
            "webId": "https://alice.pod.example/profile/card#me",
            "issuer": "https://idp.example",
        }
        mock_service.finish_connect.assert_awaited_once_with("user-1", "c", "s")

    async def test_provider_error(self, client, mock_service):
        resp = await client.get(
            "/auth/solid/callback",
            params={"error": "access_denied", "error_description": "User cancelled"},
            headers=USER_HEADERS,
        )

        assert resp.status == 400
        assert await resp.json() == {"error": "User cancelled", "code": "access_denied"}
        mock_service.finish_connect.assert_not_called()

    @pytest.mark.parametrize(
        "params, missing", [({"state": "s"}, "code"), ({"code": "c"}, "state")]
    )
    async def test_missing_parameter(self, client, params, missing):
        resp = await client.get("/auth/solid/callback", params=params, headers=USER_HEADERS)

        assert resp.status == 400
        assert await resp.json() == {"error": f"Missing required parameter: {missing}"}

    async def test_unknown_state(self, client, mock_service):
        mock_service.finish_connect.side_effect = AuthorizationStateError.unknown()

        resp = await client.get(
            "/auth/solid/callback", params={"code": "c", "state": "s"}, headers=USER_HEADERS
        )
        assert resp.status == 400

    async def test_token_failure(self, client, mock_service):
        mock_service.finish_connect.side_effect = TokenError(
            "Failed to exchange code for tokens: 400 Bad Request"
        )

        resp = await client.get(
            "/auth/solid/callback", params={"code": "c", "state": "s"}, headers=USER_HEADERS
        )
        assert resp.status == 502


@pytest.mark.asyncio
class TestConnection:
    async def test_status(self, client, mock_service):
        mock_service.connection_status.return_value = {
            "connected": False,
            "webId": None,
            "issuer": None,
            "lastSyncAt": None,
        }

        resp = await client.get("/internal/api/solid/status", headers=USER_HEADERS)

        assert resp.status == 200
        assert (await resp.json())["connected"] is False

    async def test_disconnect(self, client, mock_service):
        mock_service.disconnect.return_value = True

        resp = await client.delete("/internal/api/solid/connection", headers=USER_HEADERS)

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        mock_service.disconnect.assert_awaited_once_with("user-1")


@pytest.mark.asyncio
class TestPortable:
    async def test_pull(self, client, mock_service):
        mock_service.pull_portable_state.return_value = default_portable_state()

        resp = await client.get("/internal/api/solid/portable", headers=USER_HEADERS)

        assert resp.status == 200
        body = await resp.json()
        assert body["portableSchemaVersion"] == "0"
        assert body["preferences"]["theme"] == "system"

    async def test_pull_without_connection(self, client, mock_service):
        mock_service.pull_portable_state.side_effect = ConnectionNotFound("user-1")

        resp = await client.get("/internal/api/solid/portable", headers=USER_HEADERS)

        assert resp.status == 404
        assert await resp.json() == {"error": "No Solid connection found for user"}

    async def test_pull_failure(self, client, mock_service):
        mock_service.pull_portable_state.side_effect = SyncError(
            "Failed to pull portable state: No refresh token available"
        )

        resp = await client.get("/internal/api/solid/portable", headers=USER_HEADERS)
        assert resp.status == 502

    async def test_pod_unreachable(self, client, mock_service, metrics_client):
        mock_service.pull_portable_state.side_effect = PodRequestError(
            "Solid fetch failed for https://alice.pod.example/profile: refused",
            url="https://alice.pod.example/profile",
        )

        resp = await client.get("/internal/api/solid/portable", headers=USER_HEADERS)

        assert resp.status == 502
        assert (await resp.json())["error"].startswith("Solid fetch failed for")
        metrics_client.increment.assert_any_call(
            "server.upstream.error",
            1,
            tag_dict={"operation": "handle_solid_pull", "error": "PodRequestError"},
        )

    async def test_unreadable_tokens(self, client, mock_service, metrics_client):
        mock_service.push_portable_state.side_effect = TokenDecryptionError(
            "Failed to decrypt token data"
        )

        resp = await client.put(
            "/internal/api/solid/portable",
            json={"preferences": {"theme": "dark"}},
            headers=USER_HEADERS,
        )

        assert resp.status == 500
        assert await resp.json() == {
            "error": "Stored Solid credentials are unreadable. Reconnect the Pod.",
            "code": "token_decryption_failed",
        }
        metrics_client.increment.assert_any_call(
            "server.token_decryption.error", 1, tag_dict={"operation": "handle_solid_push"}
        )

    async def test_push(self, client, mock_service):
        mock_service.push_portable_state.return_value = True

        resp = await client.put(
            "/internal/api/solid/portable",
            json={"preferences": {"theme": "dark"}},
            headers=USER_HEADERS,
        )

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        state_input = mock_service.push_portable_state.call_args.args[1]
        assert state_input.preferences.theme == "dark"

    async def test_push_invalid_body(self, client, mock_service):
        resp = await client.put(
            "/internal/api/solid/portable",
            json={"preferences": {"theme": "neon"}},
            headers=USER_HEADERS,
        )

        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == "Invalid request"
        assert body["details"][0]["loc"] == ["preferences", "theme"]
        mock_service.push_portable_state.assert_not_called()


@pytest.mark.asyncio
class TestActivity:
    EVENT = {
        "type": "VoteCast",
        "instanceId": "quote.vote",
        "resourceUrl": "https://quote.vote/posts/1",
        "payload": {"vote": "up"},
    }

    async def test_append(self, client, mock_service):
        mock_service.append_activity_event.return_value = ActivityEvent(
            type="VoteCast",
            instance_id="quote.vote",
            resource_url="https://quote.vote/posts/1",
            timestamp=datetime(2024, 5, 1, tzinfo=timezone.utc),
            payload={"vote": "up"},
        )

        resp = await client.post(
            "/internal/api/solid/activity", json=self.EVENT, headers=USER_HEADERS
        )

        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["event"]["instanceId"] == "quote.vote"
        assert body["event"]["timestamp"].startswith("2024-05-01T00:00:00")

    async def test_disabled(self, client, mock_service):
        mock_service.append_activity_event.side_effect = ActivityLedgerDisabled()

        resp = await client.post(
            "/internal/api/solid/activity", json=self.EVENT, headers=USER_HEADERS
        )

        assert resp.status == 403
        assert await resp.json() == {"error": "Activity ledger is not enabled"}

    async def test_conflict(self, client, mock_service):
        mock_service.append_activity_event.side_effect = ActivityLedgerConflict(
            "Failed to append activity event: ledger kept changing after 3 attempts"
        )

        resp = await client.post(
            "/internal/api/solid/activity", json=self.EVENT, headers=USER_HEADERS
        )
        assert resp.status == 409

    async def test_unknown_event_type(self, client, mock_service):
        resp = await client.post(
            "/internal/api/solid/activity",
            json={**self.EVENT, "type": "Unknown"},
            headers=USER_HEADERS,
        )

        assert resp.status == 400
        mock_service.append_activity_event.assert_not_called()

    async def test_unexpected_error(self, client, mock_service):
        mock_service.append_activity_event.side_effect = RuntimeError("boom")

        resp = await client.post(
            "/internal/api/solid/activity", json=self.EVENT, headers=USER_HEADERS
        )

        assert resp.status == 500
        assert await resp.json() == {
            "error": "Internal Server Error",
            "error_type": "RuntimeError",
        }
