"""Device registration.

Authenticated by the bearer token alone (the user may not exist yet).
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_current_user_id
from ..envelope import ok
from ..schemas import DeviceRegistrationOut
from ..services.device_service import register_device

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(db: Session = Depends(get_db), user_id: str = Depends(get_current_user_id)):
    user, device_key = register_device(db, user_id)
    return ok(DeviceRegistrationOut(user_id=user.user_id, device_key=device_key))
