from typing import Optional, List
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in every error body"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    STORAGE_ERROR = "STORAGE_ERROR"


# code -> (HTTP status, hint shown to the client)
_ERROR_TABLE = {
    ErrorCode.VALIDATION_ERROR: (422, "Check the request body against /docs"),
    ErrorCode.INVALID_REQUEST: (400, None),
    ErrorCode.RESOURCE_NOT_FOUND: (404, None),
    ErrorCode.UNAUTHORIZED: (401, "Send the X-Tenant-ID header with every request"),
    ErrorCode.INTERNAL_ERROR: (500, "Quote the request ID when reporting this error"),
    ErrorCode.SERVICE_UNAVAILABLE: (503, "Wait for the service to finish starting and retry"),
    ErrorCode.STORAGE_ERROR: (503, "The telemetry store is unavailable, retry the request later"),
}


class ErrorDetail(BaseModel):
    """One offending field of a rejected request"""
    field: Optional[str] = Field(None, description="Dotted path of the field, if any")
    message: str
    code: Optional[str] = Field(None, description="Validator error type")


class ErrorResponse(BaseModel):
    """Body of every non-2xx response"""
    success: bool = False
    error_code: ErrorCode
    message: str
    details: Optional[List[ErrorDetail]] = None
    suggestion: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    request_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "error_code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": [{"field": "logs", "message": "List should have at most 100 items",
                             "code": "too_long"}],
                "suggestion": "Check the request body against /docs",
                "timestamp": "2025-12-07T10:30:00+00:00",
                "request_id": "0b7c2d4e-..."
            }
        }
    }

    @classmethod
    def for_code(cls, error_code: ErrorCode, message: str,
                 details: Optional[List[ErrorDetail]] = None) -> "ErrorResponse":
        return cls(error_code=error_code, message=message, details=details,
                   suggestion=_ERROR_TABLE[error_code][1])

    @classmethod
    def for_status(cls, status_code: int, message: str) -> "ErrorResponse":
        """Map a raw HTTP status onto the closest error code"""
        for error_code, (status, _) in _ERROR_TABLE.items():
            if status == status_code:
                return cls.for_code(error_code, message)
        return cls.for_code(ErrorCode.INTERNAL_ERROR, message)

    @property
    def http_status(self) -> int:
        return _ERROR_TABLE[self.error_code][0]
