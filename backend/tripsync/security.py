"""Security utilities: key storage, payload signatures, JWTs.

WHAT:
    - Server-side Fernet encryption for secrets at rest (device keys).
    - Per-device payload verification: HMAC-SHA256 signature over the exact
      ciphertext bytes, then Fernet decryption with the device key.
    - JWT helpers (python-jose) for consuming bearer tokens and for the
      short-lived data deletion confirmation token.

WHY:
    - Device keys never land in the database in plaintext.
    - Signatures are checked before decryption and compared in constant time.
      Any failure rejects that single submission (fails closed).

REFERENCES:
    - tripsync/services/ingestion_service.py (verify + decrypt per batch item)
    - tripsync/services/privacy_service.py (deletion tokens, encrypted exports)
"""

import base64
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt, JWTError

from tripsync.errors import EncryptionFailed, InvalidConfirmationToken


ALGORITHM = "HS256"
DELETION_TOKEN_PURPOSE = "data_deletion"
JWT_SECRET = os.getenv("JWT_SECRET", "")
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not JWT_SECRET or not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from tripsync.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = JWT_SECRET or os.getenv("JWT_SECRET", "")
    TOKEN_ENCRYPTION_KEY = TOKEN_ENCRYPTION_KEY or os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

try:
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


# =============================================================================
# SECRETS AT REST
# =============================================================================

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret with the server key before persisting.

    Args:
        plaintext: Raw secret (e.g. a device key).
        context:   Friendly label for logs (never the secret itself).
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[KEYS] Secret encrypted for %s", context)
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret`.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[KEYS] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored secret.") from exc


def generate_device_key() -> str:
    """New per-device symmetric key (Fernet, URL-safe base64)."""
    return Fernet.generate_key().decode("utf-8")


# =============================================================================
# DEVICE PAYLOADS
# =============================================================================

def sign_payload(device_key: str, encrypted_data: str) -> str:
    """Hex HMAC-SHA256 of the ciphertext, keyed by the device key."""
    return hmac.new(
        device_key.encode("utf-8"),
        encrypted_data.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(device_key: str, encrypted_data: str, signature: str) -> bool:
    """Constant-time signature check. Never raises on malformed input."""
    if not signature or not encrypted_data:
        return False
    expected = sign_payload(device_key, encrypted_data)
    # compare_digest rejects non-ASCII str; compare bytes instead
    supplied = signature.strip().lower().encode("utf-8", "surrogatepass")
    return hmac.compare_digest(expected.encode("ascii"), supplied)


def encrypt_payload(device_key: str, plaintext: bytes) -> str:
    return Fernet(device_key.encode("utf-8")).encrypt(plaintext).decode("utf-8")


def decrypt_payload(device_key: str, encrypted_data: str) -> bytes:
    """Decrypt a device submission.

    Raises:
        EncryptionFailed: If the ciphertext is malformed or the key is wrong.
    """
    try:
        return Fernet(device_key.encode("utf-8")).decrypt(encrypted_data.encode("utf-8"))
    except (InvalidToken, ValueError, TypeError) as exc:
        raise EncryptionFailed("Unable to decrypt trip payload") from exc


# =============================================================================
# JWT
# =============================================================================

def create_access_token(subject: str, expires_minutes: int = 60) -> str:
    """Create a signed JWT for the given user id.

    Issuance belongs to the external auth service; this exists for local
    tooling and tests that need a token the API will accept.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])


def create_deletion_token(user_id: str, expires_minutes: int) -> tuple[str, datetime]:
    """Short-lived confirmation token for a data deletion request."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    claims = {
        "sub": user_id,
        "purpose": DELETION_TOKEN_PURPOSE,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=ALGORITHM), expire


def verify_deletion_token(token: str, user_id: str) -> None:
    """Raise InvalidConfirmationToken unless `token` confirms deletion for `user_id`."""
    try:
        claims = decode_token(token)
    except JWTError as exc:
        raise InvalidConfirmationToken("Confirmation token is invalid or expired") from exc

    if claims.get("purpose") != DELETION_TOKEN_PURPOSE or claims.get("sub") != user_id:
        raise InvalidConfirmationToken("Confirmation token does not match this request")
