"""
Pydantic schemas for OAuth credentials and provider refresh configuration.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS


def credential_key(provider: str, tenant_id: str) -> str:
    """Queue, breaker and log key for a credential."""
    return f"{provider}:{tenant_id}"


class OAuthTokenResponse(BaseModel):
    """Token endpoint payload, for the initial exchange and for refreshes."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    access_token: str = Field(..., min_length=1, description="OAuth access token")
    refresh_token: Optional[str] = Field(None, description="Rotated refresh token, if issued")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(default=DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS, gt=0)
    x_refresh_token_expires_in: Optional[int] = Field(None, gt=0)
    scope: Optional[str] = None
    realm_id: Optional[str] = Field(None, alias="realmId")

    @field_validator("token_type")
    @classmethod
    def normalize_token_type(cls, v: str) -> str:
        """Providers return 'bearer' or 'Bearer'; store one spelling."""
        if v.lower() != "bearer":
            raise ValueError(f"Unsupported token type: {v}")
        return "Bearer"


class ProviderConfig(BaseModel):
    """How to refresh credentials for one provider (optionally one tenant)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: str = Field(..., min_length=1)
    tenant_id: Optional[str] = Field(None, description="None applies to every tenant")
    token_endpoint: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
    refresh_before_expiry_seconds: Optional[int] = Field(
        None, ge=0, description="Overrides the scheduler default"
    )
    max_retries: Optional[int] = Field(None, ge=0, description="Overrides the scheduler default")
    enable_auto_refresh: bool = True

    @field_validator("token_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("token_endpoint must be an http(s) URL")
        return v


class OAuthCredentialRead(BaseModel):
    """Decrypted view of a stored credential."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    tenant_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    provider_realm_id: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_count: int = 0
    failed_refresh_count: int = 0
    last_refresh_error: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return credential_key(self.provider, self.tenant_id)

    @property
    def refresh_state(self) -> str:
        """revoked, failing or healthy."""
        if not self.is_active:
            return "revoked"
        if self.failed_refresh_count > 0:
            return "failing"
        return "healthy"

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()


class RefreshLogEntry(BaseModel):
    """One row of refresh history."""

    model_config = ConfigDict(from_attributes=True)

    provider: str
    tenant_id: str
    status: str
    trigger: Optional[str] = None
    attempt: int
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    new_expires_at: Optional[datetime] = None
    created_at: datetime


class TokenStatistics(BaseModel):
    total: int = 0
    active: int = 0
    revoked: int = 0
    failing: int = 0
    expiring_soon: int = 0
