"""
Durable store for OAuth credentials, one row per (provider, tenant).

Tokens are encrypted at rest through utils.encryption_utils. Every write is
a single-row update in its own transaction, so concurrent writers for
different keys never contend and the last writer wins for the same key.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func

from ..constants import (
    DEFAULT_REFRESH_TOKEN_LIFETIME_SECONDS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
    RefreshOutcome,
)
from ..db.db_base import ensure_utc
from ..db.db_credential_models import OAuthCredential, TokenRefreshLog
from ..exceptions import CredentialNotFoundError
from ..schemas.credential_schemas import (
    OAuthCredentialRead,
    OAuthTokenResponse,
    RefreshLogEntry,
    TokenStatistics,
)
from ..utils.crud_helpers import (
    count_records,
    delete_records,
    get_record,
    list_records,
    upsert_record,
)
from ..utils.encryption_utils import decrypt_token, encrypt_token
from .base_service import SessionManagedService


class TokenStore(SessionManagedService):
    """
    Token Store service.

    Provides:
    - save/get/delete of the credential for a (provider, tenant) key
    - refresh bookkeeping (success resets failure state, failure increments it)
    - soft revocation on terminal auth failures
    - refresh history for the get-refresh-history route
    """

    def _to_read(self, session, credential: OAuthCredential) -> OAuthCredentialRead:
        return OAuthCredentialRead(
            id=credential.id,
            provider=credential.provider,
            tenant_id=credential.tenant_id,
            access_token=decrypt_token(
                session, credential.access_token, credential.tenant_id, credential.provider
            ),
            refresh_token=decrypt_token(
                session, credential.refresh_token, credential.tenant_id, credential.provider
            ),
            token_type=credential.token_type,
            expires_at=ensure_utc(credential.expires_at),
            refresh_token_expires_at=ensure_utc(credential.refresh_token_expires_at),
            scope=credential.scope,
            provider_realm_id=credential.provider_realm_id,
            last_refreshed_at=ensure_utc(credential.last_refreshed_at),
            refresh_count=credential.refresh_count or 0,
            failed_refresh_count=credential.failed_refresh_count or 0,
            last_refresh_error=credential.last_refresh_error,
            is_active=credential.is_active,
            created_at=ensure_utc(credential.created_at),
            updated_at=ensure_utc(credential.updated_at),
        )

    def _load(self, session, provider: str, tenant_id: str) -> OAuthCredential:
        credential = get_record(
            session, OAuthCredential, {"provider": provider, "tenant_id": tenant_id}
        )
        if credential is None:
            raise CredentialNotFoundError(
                f"No OAuth credential for provider '{provider}'",
                provider=provider,
                tenant_id=tenant_id,
            )
        return credential

    def save(
        self, provider: str, tenant_id: str, tokens: OAuthTokenResponse
    ) -> OAuthCredentialRead:
        """
        Store the result of an initial OAuth exchange.

        Replaces any existing credential for the key and re-activates it.
        """
        now = self.clock()
        with self.transaction("save_credential") as session:
            refresh_lifetime = (
                tokens.x_refresh_token_expires_in or DEFAULT_REFRESH_TOKEN_LIFETIME_SECONDS
            )
            data = {
                "access_token": encrypt_token(session, tokens.access_token, tenant_id, provider),
                "refresh_token": (
                    encrypt_token(session, tokens.refresh_token, tenant_id, provider)
                    if tokens.refresh_token
                    else None
                ),
                "token_type": tokens.token_type,
                "expires_at": now + timedelta(seconds=tokens.expires_in),
                "refresh_token_expires_at": now + timedelta(seconds=refresh_lifetime),
                "scope": tokens.scope,
                "provider_realm_id": tokens.realm_id,
                "failed_refresh_count": 0,
                "last_refresh_error": None,
                "is_active": True,
            }
            credential, created = upsert_record(
                session,
                OAuthCredential,
                {"provider": provider, "tenant_id": tenant_id},
                data,
                commit=False,
            )

            self.logger.info(
                "Stored OAuth credential",
                extra={
                    "provider": provider,
                    "tenant_id": tenant_id,
                    "new_credential": created,
                    "expires_at": data["expires_at"].isoformat(),
                },
            )
            return self._to_read(session, credential)

    def get(self, provider: str, tenant_id: str) -> Optional[OAuthCredentialRead]:
        """Decrypted credential for the key, or None."""
        with self.transaction("get_credential") as session:
            credential = get_record(
                session, OAuthCredential, {"provider": provider, "tenant_id": tenant_id}
            )
            return self._to_read(session, credential) if credential else None

    def get_required(self, provider: str, tenant_id: str) -> OAuthCredentialRead:
        with self.transaction("get_credential") as session:
            return self._to_read(session, self._load(session, provider, tenant_id))

    def apply_refresh(
        self, provider: str, tenant_id: str, tokens: OAuthTokenResponse
    ) -> OAuthCredentialRead:
        """
        Persist a successful refresh.

        Providers that do not rotate the refresh token, or omit scope/realm,
        keep the previously stored values.
        """
        now = self.clock()
        with self.transaction("apply_refresh") as session:
            credential = self._load(session, provider, tenant_id)

            credential.access_token = encrypt_token(
                session, tokens.access_token, tenant_id, provider
            )
            if tokens.refresh_token:
                credential.refresh_token = encrypt_token(
                    session, tokens.refresh_token, tenant_id, provider
                )
            if tokens.x_refresh_token_expires_in:
                credential.refresh_token_expires_at = now + timedelta(
                    seconds=tokens.x_refresh_token_expires_in
                )
            if tokens.scope:
                credential.scope = tokens.scope
            if tokens.realm_id:
                credential.provider_realm_id = tokens.realm_id

            credential.token_type = tokens.token_type
            credential.expires_at = now + timedelta(seconds=tokens.expires_in)
            credential.last_refreshed_at = now
            credential.refresh_count = (credential.refresh_count or 0) + 1
            credential.failed_refresh_count = 0
            credential.last_refresh_error = None
            credential.updated_at = now
            session.flush()

            return self._to_read(session, credential)

    def record_refresh_failure(self, provider: str, tenant_id: str, error_message: str) -> int:
        """
        Increment the failure counter and remember the error.

        Returns:
            The new failed_refresh_count
        """
        with self.transaction("record_refresh_failure") as session:
            credential = self._load(session, provider, tenant_id)
            credential.failed_refresh_count = (credential.failed_refresh_count or 0) + 1
            credential.last_refresh_error = error_message[:2000]
            credential.updated_at = self.clock()
            return credential.failed_refresh_count

    def mark_revoked(self, provider: str, tenant_id: str, reason: str) -> None:
        """Soft-deactivate a credential whose refresh token was rejected."""
        with self.transaction("mark_revoked") as session:
            credential = self._load(session, provider, tenant_id)
            credential.is_active = False
            credential.last_refresh_error = reason[:2000]
            credential.updated_at = self.clock()

        self.logger.warning(
            "OAuth credential deactivated, manual reauthorization required",
            extra={"provider": provider, "tenant_id": tenant_id, "reason": reason},
        )

    def delete(self, provider: str, tenant_id: str) -> bool:
        """Delete the credential. Returns False when none existed."""
        with self.transaction("delete_credential") as session:
            deleted = delete_records(
                session, OAuthCredential, {"provider": provider, "tenant_id": tenant_id}
            )
        if not deleted:
            return False

        self.logger.info(
            "Deleted OAuth credential", extra={"provider": provider, "tenant_id": tenant_id}
        )
        return True

    def is_token_expired(
        self, credential: OAuthCredentialRead, buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS
    ) -> bool:
        """True when the access token expires within ``buffer_seconds``."""
        return credential.seconds_until_expiry(self.clock()) <= buffer_seconds

    def list_refreshable(self) -> List[OAuthCredentialRead]:
        """Active credentials that hold a refresh token."""
        with self.transaction("list_refreshable") as session:
            rows = (
                session.query(OAuthCredential)
                .filter(
                    and_(
                        OAuthCredential.is_active.is_(True),
                        OAuthCredential.refresh_token.isnot(None),
                    )
                )
                .order_by(OAuthCredential.expires_at)
                .all()
            )
            return [self._to_read(session, row) for row in rows]

    def list_expiring(self, within_seconds: float) -> List[OAuthCredentialRead]:
        """Refreshable credentials whose access token expires inside the window."""
        cutoff = self.clock() + timedelta(seconds=within_seconds)
        return [c for c in self.list_refreshable() if c.expires_at <= cutoff]

    def list_unhealthy(self, threshold: int) -> List[OAuthCredentialRead]:
        """Credentials with more than ``threshold`` consecutive refresh failures."""
        with self.transaction("list_unhealthy") as session:
            rows = (
                session.query(OAuthCredential)
                .filter(OAuthCredential.failed_refresh_count > threshold)
                .order_by(OAuthCredential.failed_refresh_count.desc())
                .all()
            )
            return [self._to_read(session, row) for row in rows]

    def record_refresh_log(
        self,
        provider: str,
        tenant_id: str,
        status: RefreshOutcome,
        attempt: int,
        trigger: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        new_expires_at: Optional[datetime] = None,
    ) -> None:
        """Append one row to the refresh audit log."""
        with self.transaction("record_refresh_log") as session:
            session.add(
                TokenRefreshLog(
                    provider=provider,
                    tenant_id=tenant_id,
                    status=status.value,
                    trigger=trigger,
                    attempt=attempt,
                    duration_ms=duration_ms,
                    error_message=error_message[:2000] if error_message else None,
                    new_expires_at=new_expires_at,
                    created_at=self.clock(),
                )
            )

    def get_refresh_history(
        self, provider: str, tenant_id: str, limit: int = 50
    ) -> List[RefreshLogEntry]:
        """Most recent refresh outcomes first."""
        with self.transaction("get_refresh_history") as session:
            rows = list_records(
                session,
                TokenRefreshLog,
                {"provider": provider, "tenant_id": tenant_id},
                limit=limit,
                order_by="created_at",
                descending=True,
            )
            entries = []
            for row in rows:
                entry = RefreshLogEntry.model_validate(row)
                entry.created_at = ensure_utc(entry.created_at)
                entry.new_expires_at = ensure_utc(entry.new_expires_at)
                entries.append(entry)
            return entries

    def get_token_statistics(self, expiring_within_seconds: float = 3600) -> TokenStatistics:
        """Counts for the scheduler statistics endpoint."""
        cutoff = self.clock() + timedelta(seconds=expiring_within_seconds)
        with self.transaction("get_token_statistics") as session:
            total = count_records(session, OAuthCredential)
            active = count_records(session, OAuthCredential, {"is_active": True})
            failing = (
                session.query(func.count(OAuthCredential.id))
                .filter(
                    and_(
                        OAuthCredential.is_active.is_(True),
                        OAuthCredential.failed_refresh_count > 0,
                    )
                )
                .scalar()
            )
            expiring = (
                session.query(func.count(OAuthCredential.id))
                .filter(
                    and_(
                        OAuthCredential.is_active.is_(True),
                        OAuthCredential.expires_at <= cutoff,
                    )
                )
                .scalar()
            )
        return TokenStatistics(
            total=total,
            active=active,
            revoked=total - active,
            failing=failing or 0,
            expiring_soon=expiring or 0,
        )
