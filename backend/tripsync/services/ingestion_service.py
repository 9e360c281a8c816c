"""Ingestion and verification of device trip submissions.

Each batch item is judged on its own: verify the HMAC signature over the
exact ciphertext, decrypt with the sender's device key, parse and validate
the trip. The result is `Accepted(payload, payload_hash)` or
`Rejected(code, message)`. A bad item never aborts the batch, and this
module has no side effects.

Decrypted payloads are never logged.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from pydantic import ValidationError

from tripsync.errors import EncryptionFailed, StoreUnavailable
from tripsync.models import User
from tripsync.schemas import TripPayload, TripSubmission
from tripsync.security import decrypt_payload, decrypt_secret, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class Accepted:
    trip_id: str
    payload: TripPayload
    payload_hash: str


@dataclass
class Rejected:
    trip_id: str
    code: str
    message: str


Verdict = Union[Accepted, Rejected]


def canonical_hash(document: dict) -> str:
    """SHA-256 over the canonical JSON form (sorted keys, compact separators).

    Insensitive to key order and whitespace, so a device that re-serialises
    the same trip still produces the same fingerprint.
    """
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid trip payload"


class IngestionService:
    """Verifies and decodes submissions for one authenticated user."""

    def __init__(self, user: User):
        self.user = user
        self._device_key: Optional[str] = None

    @property
    def device_key(self) -> str:
        if self._device_key is None:
            self._device_key = decrypt_secret(self.user.device_key_enc, context=f"device:{self.user.user_id}")
        return self._device_key

    def verify_item(self, item: TripSubmission) -> Verdict:
        try:
            device_key = self.device_key
        except ValueError:
            # Stored key unreadable, e.g. after a TOKEN_ENCRYPTION_KEY rotation.
            logger.error("[SYNC] Device key for %s cannot be decrypted", self.user.user_id)
            return Rejected(item.trip_id, StoreUnavailable.code, "Device key unavailable; retry later")

        if not verify_signature(device_key, item.encrypted_data, item.signature):
            logger.warning("[SYNC] Signature mismatch for trip %s (user %s)", item.trip_id, self.user.user_id)
            return Rejected(item.trip_id, EncryptionFailed.code, "Signature verification failed")

        try:
            plaintext = decrypt_payload(device_key, item.encrypted_data)
        except EncryptionFailed as exc:
            logger.warning("[SYNC] Decryption failed for trip %s", item.trip_id)
            return Rejected(item.trip_id, exc.code, exc.message)

        try:
            document = json.loads(plaintext)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return Rejected(item.trip_id, "VALIDATION_ERROR", "Trip payload is not valid JSON")
        if not isinstance(document, dict):
            return Rejected(item.trip_id, "VALIDATION_ERROR", "Trip payload must be a JSON object")

        try:
            payload = TripPayload.model_validate(document)
        except ValidationError as exc:
            return Rejected(item.trip_id, "VALIDATION_ERROR", _validation_message(exc))

        if payload.trip_id != item.trip_id:
            return Rejected(item.trip_id, "VALIDATION_ERROR", "trip_id does not match the encrypted payload")
        if payload.user_id is not None and payload.user_id != self.user.user_id:
            return Rejected(item.trip_id, "VALIDATION_ERROR", "Payload user_id does not match the authenticated user")

        return Accepted(item.trip_id, payload, canonical_hash(document))

    def verify_batch(self, items: List[TripSubmission]) -> List[Verdict]:
        return [self.verify_item(item) for item in items]
