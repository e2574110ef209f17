"""
Provider token endpoint client for the refresh_token grant.

Failures are classified so the scheduler can decide between retrying
(TransientRefreshError) and deactivating the credential (TerminalAuthError).
"""

from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from ..constants import TERMINAL_OAUTH_ERRORS
from ..exceptions import TerminalAuthError, TransientRefreshError
from ..schemas.credential_schemas import OAuthTokenResponse, ProviderConfig
from ..utils.logger import get_logger


class TokenRefreshClient:
    """Exchanges refresh tokens for new access tokens."""

    def __init__(self, timeout: float = 30.0, http_session: Optional[requests.Session] = None):
        """
        Args:
            timeout: Per-request timeout in seconds
            http_session: Optional requests session (injected in tests)
        """
        self.timeout = timeout
        self.http = http_session or requests.Session()
        self.logger = get_logger()

    def refresh(self, config: ProviderConfig, refresh_token: str) -> OAuthTokenResponse:
        """
        Perform the refresh_token grant.

        Args:
            config: Provider endpoint and client credentials
            refresh_token: Current refresh token

        Returns:
            Parsed token response

        Raises:
            TransientRefreshError: Timeout, connection failure, 5xx/429, malformed body
            TerminalAuthError: Provider rejected the refresh token itself
        """
        provider = config.provider

        try:
            response = self.http.post(
                config.token_endpoint,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(config.client_id, config.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientRefreshError(
                f"Token endpoint timed out after {self.timeout}s", provider, cause=e
            )
        except requests.RequestException as e:
            raise TransientRefreshError(
                f"Token endpoint unreachable: {str(e)}", provider, cause=e
            )

        body = self._parse_body(response)

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientRefreshError(
                f"Token endpoint returned HTTP {response.status_code}",
                provider,
                http_status=response.status_code,
                oauth_error=body.get("error"),
            )

        if response.status_code >= 400:
            oauth_error = body.get("error")
            description = body.get("error_description") or oauth_error or response.reason
            if oauth_error in TERMINAL_OAUTH_ERRORS:
                raise TerminalAuthError(
                    f"Refresh token rejected: {description}",
                    provider,
                    http_status=response.status_code,
                    oauth_error=oauth_error,
                )
            raise TransientRefreshError(
                f"Token endpoint returned HTTP {response.status_code}: {description}",
                provider,
                http_status=response.status_code,
                oauth_error=oauth_error,
            )

        return self._parse_token_response(provider, body, response.status_code)

    def _parse_body(self, response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _parse_token_response(
        self, provider: str, body: Dict[str, Any], status_code: int
    ) -> OAuthTokenResponse:
        if body.get("error"):
            if body["error"] in TERMINAL_OAUTH_ERRORS:
                raise TerminalAuthError(
                    f"Refresh token rejected: {body.get('error_description') or body['error']}",
                    provider,
                    http_status=status_code,
                    oauth_error=body["error"],
                )
            raise TransientRefreshError(
                f"Token endpoint returned error '{body['error']}'",
                provider,
                http_status=status_code,
                oauth_error=body["error"],
            )

        if not body.get("access_token"):
            raise TransientRefreshError(
                "Token endpoint response has no access_token", provider, http_status=status_code
            )

        try:
            tokens = OAuthTokenResponse.model_validate(body)
        except PydanticValidationError as e:
            raise TransientRefreshError(
                f"Malformed token response: {str(e)}", provider, cause=e, http_status=status_code
            )

        self.logger.debug(
            "Token endpoint returned new access token",
            extra={
                "provider": provider,
                "expires_in": tokens.expires_in,
                "rotated_refresh_token": tokens.refresh_token is not None,
            },
        )
        return tokens
