"""Uniform ``{success, message?, data?}`` response envelope."""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def send_response(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        # Pydantic models serialize with their camelCase aliases
        body["data"] = jsonable_encoder(data, by_alias=True)
    return JSONResponse(status_code=status_code, content=body)


def send_error(message: str, status_code: int, errors: Optional[list] = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)
