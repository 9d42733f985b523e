"""Security utilities for JWTs and tenant credential encryption.

WHAT:
    Centralizes JWT helpers for operator authentication and symmetric
    encryption of per-tenant platform credentials.

WHY:
    - JWT helpers authenticate operators calling the outbox endpoints.
    - Credential encryption keeps tenant access tokens out of plaintext
      storage. Each tenant gets its own Fernet key derived from the master
      key (HKDF, tenant id as context) so a leaked ciphertext can only be
      opened for the tenant it was written for.

REFERENCES:
    - app/services/capi_credentials.py (only consumer of decrypt_credentials)
"""

import base64
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from jose import jwt, JWTError


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

HKDF_SALT = b"capi-credentials-v1"

logger = logging.getLogger(__name__)


if not JWT_SECRET or not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from app.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = JWT_SECRET or os.getenv("JWT_SECRET", "")
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))
    TOKEN_ENCRYPTION_KEY = TOKEN_ENCRYPTION_KEY or os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

try:
    _master_key = base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    if len(_master_key) != 32:
        raise ValueError("master key must decode to 32 bytes")
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


def _tenant_cipher(context: str) -> Fernet:
    """Derive the Fernet cipher bound to one tenant."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=HKDF_SALT,
        info=context.encode("utf-8"),
    )
    derived = hkdf.derive(_master_key)
    return Fernet(base64.urlsafe_b64encode(derived))


def encrypt_credentials(credentials: Dict[str, Any], *, context: str) -> str:
    """Encrypt a credential JSON object for storage.

    Args:
        credentials: e.g. {"access_token": "..."}
        context:     Key-derivation context (the tenant's organization id).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not credentials:
        raise ValueError("Cannot encrypt empty credentials.")

    plaintext = json.dumps(credentials, sort_keys=True)
    ciphertext = _tenant_cipher(context).encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[CRED_ENCRYPT] Credentials encrypted for %s", context)
    return ciphertext


def decrypt_credentials(ciphertext: str, *, context: str) -> Dict[str, Any]:
    """Decrypt a credential blob written by `encrypt_credentials`.

    Raises:
        ValueError: If the blob is empty, was written for another context,
            was tampered with, or does not hold a JSON object.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty credentials.")

    try:
        plaintext = _tenant_cipher(context).decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[CRED_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored credentials.") from exc

    try:
        decoded = json.loads(plaintext)
    except json.JSONDecodeError as exc:
        raise ValueError("Decrypted credentials are not valid JSON.") from exc

    if not isinstance(decoded, dict):
        raise ValueError("Decrypted credentials are not a JSON object.")
    return decoded


def create_access_token(subject: str, role: str = "admin", expires_minutes: int | None = None) -> str:
    """Create a signed JWT for an operator."""
    if expires_minutes is None:
        expires_minutes = JWT_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise exc
