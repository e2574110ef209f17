"""
Unit tests for the exception system.

Covers the BaseError core, the factory helpers, and the token refresh and
sync error taxonomy the scheduler and sync engine branch on.
"""

import pytest

from integration_sync_core.exceptions import (
    BaseError,
    CircuitOpenError,
    CredentialNotFoundError,
    ErrorCode,
    ExternalServiceError,
    FatalSyncError,
    RecordSyncError,
    RefreshConfigNotFoundError,
    ServiceError,
    TerminalAuthError,
    TokenRefreshError,
    TransientRefreshError,
    UpstreamFetchError,
    UpstreamUnavailableError,
    ValidationError,
    clear_correlation_id,
    correlation_context,
    get_correlation_id,
    not_found,
    set_correlation_id,
    validation_failed,
)


class TestBaseError:
    """Test BaseError class."""

    def test_basic_error_creation(self):
        """Defaults, generated ids and context."""
        error = BaseError("Test error message")

        assert error.message == "Test error message"
        assert error.error_code == ErrorCode.INTERNAL_ERROR
        assert error.status_code == 500
        assert error.cause is None
        assert error.error_id is not None
        assert error.context["error_id"] == error.error_id

    def test_error_with_cause(self):
        """The cause type and message are captured in context."""
        original_error = ValueError("Original error")
        error = BaseError("Wrapped error", cause=original_error)

        assert error.cause is original_error
        assert error.context["cause"]["type"] == "ValueError"
        assert error.context["cause"]["message"] == "Original error"

    def test_correlation_id_is_attached(self):
        """A correlation id set on the thread is copied into the error context."""
        set_correlation_id("corr-123")
        try:
            error = BaseError("With correlation")
        finally:
            clear_correlation_id()

        assert error.context["correlation_id"] == "corr-123"
        assert get_correlation_id() is None

    def test_correlation_context_restores_outer_id(self):
        set_correlation_id("outer")
        try:
            with correlation_context("refresh") as inner:
                assert get_correlation_id() == inner
                assert BaseError("Inside").context["correlation_id"] == inner
            assert get_correlation_id() == "outer"
        finally:
            clear_correlation_id()

    def test_to_dict_contains_code_and_message(self):
        error = BaseError("Serialize me", error_code=ErrorCode.NOT_FOUND, status_code=404)

        data = error.to_dict()

        assert data["error"]["code"] == ErrorCode.NOT_FOUND.value
        assert data["error"]["message"] == "Serialize me"


class TestFactoryFunctions:
    """Test the error factory helpers."""

    def test_not_found(self):
        error = not_found("EntityMapping", entity_type="INVOICE", upstream_id="42")

        assert error.status_code == 404
        assert error.error_code == ErrorCode.NOT_FOUND
        assert "entity_type=INVOICE" in error.message
        assert "upstream_id=42" in error.message

    def test_validation_failed(self):
        error = validation_failed("entity_type", "DEAL", "entity type is not registered")

        assert isinstance(error, ValidationError)
        assert error.status_code == 400
        assert error.context["field"] == "entity_type"
        assert error.context["value"] == "DEAL"


class TestTokenRefreshErrors:
    """Test the refresh failure taxonomy."""

    def test_transient_error_is_retryable(self):
        error = TransientRefreshError("Timed out", "hubspot", http_status=503)

        assert isinstance(error, TokenRefreshError)
        assert isinstance(error, ExternalServiceError)
        assert error.retryable is True
        assert error.provider == "hubspot"
        assert error.http_status == 503
        assert error.context["service_name"] == "hubspot_token_endpoint"

    def test_terminal_error_defaults(self):
        error = TerminalAuthError("Refresh token revoked", "hubspot", oauth_error="invalid_grant")

        assert error.retryable is False
        assert error.error_code == ErrorCode.EXPIRED
        assert error.status_code == 401
        assert error.oauth_error == "invalid_grant"
        assert error.context["oauth_error"] == "invalid_grant"

    def test_circuit_open_error(self):
        error = CircuitOpenError("Failing fast", key="hubspot:t1", retry_after_seconds=12.5)

        assert error.error_code == ErrorCode.CIRCUIT_OPEN
        assert error.status_code == 503
        assert error.key == "hubspot:t1"
        assert error.retry_after_seconds == 12.5
        assert error.context["circuit_key"] == "hubspot:t1"

    @pytest.mark.parametrize(
        "error_class,status_code",
        [(CredentialNotFoundError, 404), (RefreshConfigNotFoundError, 404)],
    )
    def test_operator_errors(self, error_class, status_code):
        error = error_class(provider="hubspot", tenant_id="t1")

        assert error.status_code == status_code
        assert error.context["provider"] == "hubspot"


class TestSyncErrors:
    """Test record-level and fatal sync errors."""

    def test_record_sync_error(self):
        error = RecordSyncError("Bad record", entity_type="CONTACT", upstream_id="7")

        assert error.status_code == 422
        assert error.upstream_id == "7"
        assert error.context["entity_type"] == "CONTACT"

    def test_fatal_sync_error_is_service_error(self):
        error = FatalSyncError("Aborted", entity_type="INVOICE")

        assert isinstance(error, ServiceError)
        assert error.entity_type == "INVOICE"
        assert error.context["operation"] == "incremental_sync"

    def test_upstream_errors_are_fatal(self):
        unavailable = UpstreamUnavailableError("Down", entity_type="COMPANY")
        fetch = UpstreamFetchError("Bad request", entity_type="COMPANY")

        assert isinstance(unavailable, FatalSyncError)
        assert isinstance(fetch, FatalSyncError)
        assert unavailable.error_code == ErrorCode.CONNECTION_ERROR
        assert fetch.error_code == ErrorCode.EXTERNAL_API_ERROR
