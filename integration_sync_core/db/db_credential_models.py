"""
OAuth credential models.

Just the data structure - lifecycle rules live in services.token_store.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from .db_base import EncryptedBinary, TimestampMixin, UUIDMixin, utc_now
from .db_config import Base


class OAuthCredential(Base, UUIDMixin, TimestampMixin):
    """One OAuth credential per (provider, tenant_id)."""

    __tablename__ = "oauth_credentials"

    provider = Column(String(50), nullable=False)
    tenant_id = Column(String(100), nullable=False, index=True)

    # Encrypted storage
    access_token = Column(EncryptedBinary, nullable=False)
    refresh_token = Column(EncryptedBinary, nullable=True)

    token_type = Column(String(20), nullable=False, default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scope = Column(Text, nullable=True)
    provider_realm_id = Column(String(100), nullable=True)

    # Refresh bookkeeping
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_count = Column(Integer, nullable=False, default=0)
    failed_refresh_count = Column(Integer, nullable=False, default=0)
    last_refresh_error = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_oauth_credential_key", "provider", "tenant_id", unique=True),
        Index("ix_oauth_credential_expiry", "is_active", "expires_at"),
    )


class TokenRefreshLog(Base, UUIDMixin):
    """Audit row per refresh attempt outcome."""

    __tablename__ = "token_refresh_log"

    provider = Column(String(50), nullable=False)
    tenant_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)
    trigger = Column(String(30), nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    new_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (Index("ix_refresh_log_lookup", "provider", "tenant_id", "created_at"),)
