"""Per-tenant CAPI credential resolution.

WHAT:
    Resolves the destination pixel, access token and privacy settings for one
    tenant, and persists rotated tokens in encrypted form.

WHY:
    Tenants are mid-migration from plaintext to encrypted token storage and
    some still depend on the process-wide legacy token. Resolution order is:

        1. plaintext credential row  -> use directly
        2. encrypted credential row  -> decrypt with the tenant id as context
        3. injected fallback token   -> legacy tenants
        4. otherwise                 -> NoCredentialsError

    The fallback token is passed in explicitly instead of read from the
    environment here, so the order stays testable.

    Resolution runs once per tenant per outbox pass, not once per event.

REFERENCES:
    - app/security.py (encrypt_credentials / decrypt_credentials)
    - app/services/capi_outbox_processor.py (caller)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import ApiCredential, CredentialFormatEnum, MetaCapiConfig
from app.security import decrypt_credentials, encrypt_credentials
from app.services.capi_errors import CapiNotEnabledError, DecryptionError, NoCredentialsError

logger = logging.getLogger(__name__)

CAPI_PLATFORM = "meta_capi"

SOURCE_PLAINTEXT = "plaintext"
SOURCE_DECRYPTED = "decrypted"
SOURCE_GLOBAL_FALLBACK = "global_fallback"


@dataclass(frozen=True)
class PlaintextCredential:
    """Legacy row: token stored as readable JSON."""

    access_token: Optional[str]


@dataclass(frozen=True)
class EncryptedCredential:
    """Fernet ciphertext of the credential JSON object."""

    ciphertext: str


StoredCredential = Union[PlaintextCredential, EncryptedCredential]


@dataclass(frozen=True)
class ResolvedCredentials:
    organization_id: UUID
    pixel_id: str
    access_token: str
    privacy_mode: str
    allowed_fields: Optional[FrozenSet[str]]
    test_event_code: Optional[str]
    source: str

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks.
        return (
            f"ResolvedCredentials(organization_id={self.organization_id}, pixel_id={self.pixel_id}, "
            f"privacy_mode={self.privacy_mode}, source={self.source}, access_token=***)"
        )


def load_stored_credential(row: ApiCredential) -> Optional[StoredCredential]:
    """Turn a credential row into its tagged variant.

    Returns None when the row holds nothing usable for its storage format.
    """
    if row.storage_format == CredentialFormatEnum.plaintext:
        data = row.credentials if isinstance(row.credentials, dict) else {}
        token = data.get("access_token")
        return PlaintextCredential(access_token=token if isinstance(token, str) and token else None)

    if row.encrypted_credentials:
        return EncryptedCredential(ciphertext=row.encrypted_credentials)
    return None


class CredentialResolver:
    """Resolve tenant credentials for the outbox processor."""

    def __init__(
        self,
        db: Session,
        fallback_token: Optional[str] = None,
        decrypt: Callable[..., Dict] = decrypt_credentials,
    ):
        self.db = db
        self.fallback_token = fallback_token or None
        self._decrypt = decrypt

    def get_config(self, organization_id: UUID) -> MetaCapiConfig:
        """Return the tenant's enabled CAPI config.

        Raises:
            CapiNotEnabledError: No config row, or it is disabled.
        """
        config = (
            self.db.query(MetaCapiConfig)
            .filter(MetaCapiConfig.organization_id == organization_id)
            .first()
        )
        if config is None or not config.is_enabled:
            raise CapiNotEnabledError("CAPI not enabled")
        return config

    def _active_credential(self, organization_id: UUID) -> Optional[ApiCredential]:
        return (
            self.db.query(ApiCredential)
            .filter(
                ApiCredential.organization_id == organization_id,
                ApiCredential.platform == CAPI_PLATFORM,
                ApiCredential.is_active.is_(True),
            )
            .order_by(ApiCredential.created_at.desc())
            .first()
        )

    def _decrypt_token(self, organization_id: UUID, stored: EncryptedCredential) -> Optional[str]:
        try:
            data = self._decrypt(stored.ciphertext, context=str(organization_id))
        except ValueError as exc:
            raise DecryptionError(str(exc)) from exc
        token = data.get("access_token") if isinstance(data, dict) else None
        return token if isinstance(token, str) and token else None

    def resolve_token(self, organization_id: UUID) -> tuple[str, str]:
        """Walk the resolution order and return (access_token, source).

        Raises:
            NoCredentialsError: No path produced a token.
        """
        row = self._active_credential(organization_id)
        stored = load_stored_credential(row) if row is not None else None

        if isinstance(stored, PlaintextCredential) and stored.access_token:
            return stored.access_token, SOURCE_PLAINTEXT

        if isinstance(stored, EncryptedCredential):
            try:
                token = self._decrypt_token(organization_id, stored)
            except DecryptionError as exc:
                logger.warning("[CAPI_CREDS] Decryption failed for org %s: %s", organization_id, exc)
                token = None
            if token:
                return token, SOURCE_DECRYPTED

        if self.fallback_token:
            logger.info("[CAPI_CREDS] Using global fallback token for org %s", organization_id)
            return self.fallback_token, SOURCE_GLOBAL_FALLBACK

        raise NoCredentialsError(f"No CAPI credentials available for organization {organization_id}")

    def resolve(self, organization_id: UUID) -> ResolvedCredentials:
        """Resolve everything needed to deliver a tenant's events.

        Raises:
            CapiNotEnabledError: Tenant config missing or disabled.
            NoCredentialsError: No usable access token.
        """
        config = self.get_config(organization_id)
        token, source = self.resolve_token(organization_id)

        privacy_mode = config.privacy_mode.value if hasattr(config.privacy_mode, "value") else config.privacy_mode
        allowed = frozenset(config.allowed_fields) if config.allowed_fields is not None else None

        logger.debug(
            "[CAPI_CREDS] Resolved org %s via %s (pixel %s)",
            organization_id, source, config.pixel_id,
        )
        return ResolvedCredentials(
            organization_id=organization_id,
            pixel_id=config.pixel_id,
            access_token=token,
            privacy_mode=privacy_mode,
            allowed_fields=allowed,
            test_event_code=config.test_event_code or None,
            source=source,
        )


def store_capi_credentials(db: Session, organization_id: UUID, access_token: str) -> ApiCredential:
    """Encrypt and persist a tenant's access token, deactivating older rows.

    Used by token rotation; the resolver always prefers the newest active row.
    """
    if not access_token:
        raise ValueError("access_token is required")

    now = datetime.now(timezone.utc)
    previous = (
        db.query(ApiCredential)
        .filter(
            ApiCredential.organization_id == organization_id,
            ApiCredential.platform == CAPI_PLATFORM,
            ApiCredential.is_active.is_(True),
        )
        .all()
    )
    for row in previous:
        row.is_active = False
        row.rotated_at = now

    credential = ApiCredential(
        organization_id=organization_id,
        platform=CAPI_PLATFORM,
        is_active=True,
        storage_format=CredentialFormatEnum.encrypted,
        encrypted_credentials=encrypt_credentials(
            {"access_token": access_token}, context=str(organization_id)
        ),
        created_at=now,
    )
    db.add(credential)
    db.commit()
    logger.info(
        "[CAPI_CREDS] Stored encrypted credentials for org %s (%d previous deactivated)",
        organization_id, len(previous),
    )
    return credential
