"""
At-rest encryption for OAuth tokens.

PostgreSQL deployments encrypt with pgcrypto using a key scoped to the tenant
and provider. SQLite (development and tests) stores the UTF-8 bytes unchanged.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session


def _uses_pgcrypto(session: Session) -> bool:
    return session.bind.dialect.name == "postgresql"


def _encryption_key(tenant_id: str, key_suffix: str) -> str:
    return f"{tenant_id}_{key_suffix}" if key_suffix else tenant_id


def encrypt_value(session: Session, value: str, tenant_id: str, key_suffix: str = "") -> bytes:
    """
    Encrypt a value with a tenant-scoped key.

    Args:
        session: Session whose bind decides the encryption backend
        value: Plaintext to encrypt
        tenant_id: Tenant the key is scoped to
        key_suffix: Further scopes the key, e.g. per provider

    Returns:
        Ciphertext bytes (plain UTF-8 bytes on SQLite)
    """
    if not _uses_pgcrypto(session):
        return value.encode() if isinstance(value, str) else value

    return session.execute(
        text("SELECT pgp_sym_encrypt(:value, :key)"),
        {"value": value, "key": _encryption_key(tenant_id, key_suffix)},
    ).scalar()


def decrypt_value(
    session: Session, encrypted_value: Optional[bytes], tenant_id: str, key_suffix: str = ""
) -> Optional[str]:
    """Reverse encrypt_value. Empty or missing ciphertext decrypts to None."""
    if not encrypted_value:
        return None

    if not _uses_pgcrypto(session):
        if isinstance(encrypted_value, bytes):
            return encrypted_value.decode()
        return encrypted_value

    return session.execute(
        text("SELECT pgp_sym_decrypt(:value, :key)"),
        {"value": encrypted_value, "key": _encryption_key(tenant_id, key_suffix)},
    ).scalar()


def encrypt_token(session: Session, token: str, tenant_id: str, provider: str) -> bytes:
    """Encrypt an OAuth token; the key is scoped to tenant and provider."""
    return encrypt_value(session, token, tenant_id, f"oauth_{provider}")


def decrypt_token(
    session: Session, encrypted: Optional[bytes], tenant_id: str, provider: str
) -> Optional[str]:
    return decrypt_value(session, encrypted, tenant_id, f"oauth_{provider}")
