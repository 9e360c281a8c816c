"""Device key registration.

A user's device key signs and encrypts every trip submission. The server
keeps it encrypted at rest (`encrypt_secret`) and returns the plaintext
exactly once, in the registration response. Registering again rotates the
key: batches signed with the old key are then rejected with ENCRYPTION_ERROR.
"""

import logging
from typing import Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripsync.models import User
from tripsync.repositories.trip_repo import TripRepo
from tripsync.security import encrypt_secret, generate_device_key

logger = logging.getLogger(__name__)


def register_device(db: Session, user_id: str) -> Tuple[User, str]:
    device_key = generate_device_key()
    device_key_enc = encrypt_secret(device_key, context=f"device:{user_id}")
    repo = TripRepo(db)

    user = repo.get_user(user_id)
    if user is None:
        try:
            user = repo.add_user(User(user_id=user_id, device_key_enc=device_key_enc))
            db.commit()
        except IntegrityError:
            # Registered concurrently; fall through to rotation.
            db.rollback()
            user = repo.get_user(user_id)
        else:
            logger.info("[KEYS] Device registered for %s", user_id)
            return user, device_key

    user.device_key_enc = device_key_enc
    db.commit()
    logger.info("[KEYS] Device key rotated for %s", user_id)
    return user, device_key
