from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    detail: str


class ApiResponse(BaseModel):
    """Envelope shared by every JSON endpoint, including error handlers."""

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None


def success_response(message: str = "Success", data: Optional[Any] = None) -> ApiResponse:
    return ApiResponse(success=True, message=message, data=data)


def error_response(message: str, error_code: str = "ERROR", error_detail: Optional[str] = None) -> ApiResponse:
    return ApiResponse(
        success=False,
        message=message,
        error=ErrorDetail(code=error_code, detail=error_detail or message),
    )
