"""
Custom Exceptions
Application-specific HTTP error handling
Source: https://fastapi.tiangolo.com/tutorial/handling-errors/
Verified: 2025-11-14
"""

from typing import Any

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Raised when resource not found"""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


class ValidationError(HTTPException):
    """Raised when validation fails"""

    def __init__(self, detail: Any = "Validation error"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class ConflictError(HTTPException):
    """Raised when resource conflict occurs"""

    def __init__(self, detail: str = "Resource conflict"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )


class UpstreamError(HTTPException):
    """Raised when the clearinghouse call fails"""

    def __init__(self, detail: Any = "Upstream service error"):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
        )
