from typing import Any, Optional
from fastapi.responses import JSONResponse


def success_response(
    data: Any = None,
    message: str = "Success",
    status_code: int = 200
) -> JSONResponse:
    """Standard success response"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": True,
            "message": message,
            "data": data
        }
    )


def error_response(
    message: str = "Error occurred",
    errors: Optional[Any] = None,
    status_code: int = 400,
    error_code: Optional[str] = None,
    error_kind: Optional[str] = None,
    headers: Optional[dict] = None
) -> JSONResponse:
    """Standard error response, with the stable code when one is known"""
    content = {
        "success": False,
        "message": message
    }

    if error_code:
        content["error_code"] = error_code
    if error_kind:
        content["error_kind"] = error_kind
    if errors:
        content["errors"] = errors

    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=headers
    )
