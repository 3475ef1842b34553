"""
Common Schemas
==============

Response envelope shared by every endpoint.
"""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")

JSONObject = dict[str, Any]


class BaseResponse(BaseModel, Generic[T]):
    """``{"success": true, "data": ...}``"""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorDetail(BaseModel):
    """
    Error body. Domain errors add context fields next to ``code`` and
    ``message`` (``productId``, ``platform``, ``field`` ...).
    """

    model_config = ConfigDict(extra="allow")

    code: str
    message: str


class ErrorResponse(BaseModel):
    """``{"success": false, "error": {...}}``"""

    success: bool = False
    error: ErrorDetail


# OpenAPI documentation for the error statuses the routers can return
ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid request or store rejection"},
    401: {"model": ErrorResponse, "description": "Missing or invalid credentials"},
    404: {"model": ErrorResponse, "description": "Unknown subscriber or entitlement"},
    422: {"model": ErrorResponse, "description": "Unknown product or store not configured"},
    503: {"model": ErrorResponse, "description": "Store temporarily unavailable"},
}
