"""Response envelope: `{success, data|error, timestamp}`.

Routers wrap successful results with `ok`; `main.py` exception handlers
build failures with `fail`.
"""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder

from .utils.timeutil import isoformat_z, utcnow


def ok(data: Any = None) -> dict:
    return {"success": True, "data": jsonable_encoder(data), "timestamp": isoformat_z(utcnow())}


def fail(code: str, message: str, details: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message}
    if details:
        error["details"] = jsonable_encoder(details)
    return {"success": False, "error": error, "timestamp": isoformat_z(utcnow())}
