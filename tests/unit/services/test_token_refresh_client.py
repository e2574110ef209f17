"""Tests for the refresh_token grant client and its failure classification."""

from unittest.mock import Mock

import pytest
import requests

from integration_sync_core.exceptions import TerminalAuthError, TransientRefreshError
from integration_sync_core.schemas.credential_schemas import ProviderConfig
from integration_sync_core.services.token_refresh_client import TokenRefreshClient


@pytest.fixture
def provider_config():
    return ProviderConfig(
        provider="hubspot",
        token_endpoint="https://api.hubapi.com/oauth/v1/token",
        client_id="client-id",
        client_secret="client-secret",
    )


@pytest.fixture
def http():
    return Mock()


@pytest.fixture
def client(http):
    return TokenRefreshClient(timeout=10.0, http_session=http)


def _response(status_code=200, body=None, reason="OK"):
    response = Mock()
    response.status_code = status_code
    response.reason = reason
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body if body is not None else {}
    return response


class TestSuccessfulRefresh:
    def test_posts_refresh_grant(self, client, http, provider_config):
        http.post.return_value = _response(
            body={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 1800,
                "token_type": "bearer",
            }
        )

        tokens = client.refresh(provider_config, "old-refresh")

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "new-refresh"
        assert tokens.expires_in == 1800
        assert tokens.token_type == "Bearer"
        http.post.assert_called_once_with(
            "https://api.hubapi.com/oauth/v1/token",
            data={"grant_type": "refresh_token", "refresh_token": "old-refresh"},
            auth=("client-id", "client-secret"),
            headers={"Accept": "application/json"},
            timeout=10.0,
        )

    def test_missing_expires_in_defaults_to_one_hour(self, client, http, provider_config):
        http.post.return_value = _response(body={"access_token": "new-access"})

        tokens = client.refresh(provider_config, "old-refresh")

        assert tokens.expires_in == 3600
        assert tokens.refresh_token is None


class TestTerminalFailures:
    """Rejections of the refresh token itself are never retried."""

    @pytest.mark.parametrize(
        "status_code,oauth_error",
        [(400, "invalid_grant"), (401, "invalid_token"), (400, "unauthorized_client")],
    )
    def test_terminal_oauth_errors(self, client, http, provider_config, status_code, oauth_error):
        http.post.return_value = _response(
            status_code,
            {"error": oauth_error, "error_description": "refresh token is invalid"},
            reason="Bad Request",
        )

        with pytest.raises(TerminalAuthError) as exc_info:
            client.refresh(provider_config, "old-refresh")

        error = exc_info.value
        assert error.retryable is False
        assert error.oauth_error == oauth_error
        assert error.http_status == status_code
        assert "refresh token is invalid" in error.message

    def test_error_in_success_body(self, client, http, provider_config):
        http.post.return_value = _response(200, {"error": "invalid_grant"})

        with pytest.raises(TerminalAuthError):
            client.refresh(provider_config, "old-refresh")


class TestTransientFailures:
    """Everything else is retried with backoff."""

    @pytest.mark.parametrize("status_code", [500, 502, 503, 429])
    def test_server_errors_and_rate_limits(self, client, http, provider_config, status_code):
        http.post.return_value = _response(status_code, ValueError("not json"), reason="Error")

        with pytest.raises(TransientRefreshError) as exc_info:
            client.refresh(provider_config, "old-refresh")

        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == status_code

    def test_other_client_errors(self, client, http, provider_config):
        http.post.return_value = _response(400, {"error": "invalid_request"}, reason="Bad Request")

        with pytest.raises(TransientRefreshError) as exc_info:
            client.refresh(provider_config, "old-refresh")

        assert exc_info.value.oauth_error == "invalid_request"

    def test_timeout(self, client, http, provider_config):
        http.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(TransientRefreshError) as exc_info:
            client.refresh(provider_config, "old-refresh")

        assert isinstance(exc_info.value.cause, requests.Timeout)

    def test_connection_error(self, client, http, provider_config):
        http.post.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(TransientRefreshError, match="unreachable"):
            client.refresh(provider_config, "old-refresh")

    @pytest.mark.parametrize(
        "body",
        [
            ValueError("not json"),
            {"token_type": "bearer"},
            {"access_token": "a", "expires_in": 0},
            {"access_token": "a", "token_type": "mac"},
        ],
    )
    def test_malformed_success_body(self, client, http, provider_config, body):
        http.post.return_value = _response(200, body)

        with pytest.raises(TransientRefreshError):
            client.refresh(provider_config, "old-refresh")
