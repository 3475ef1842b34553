"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from entitled.schemas.common import (
    ERROR_RESPONSES,
    BaseResponse,
    ErrorDetail,
    ErrorResponse,
    JSONObject,
)

__all__ = [
    "ERROR_RESPONSES",
    "BaseResponse",
    "ErrorDetail",
    "ErrorResponse",
    "JSONObject",
]
