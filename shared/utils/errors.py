"""
shared/utils/errors.py
Application error taxonomy. Every error is an HTTPException, so FastAPI
renders it directly; `code` gives clients a stable machine-readable tag.
"""

from typing import Optional

from fastapi import HTTPException, status


class AppError(HTTPException):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_detail: str = "An internal server error occurred"

    def __init__(self, detail: Optional[str] = None, state: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)
        # Optional UI state hint for the public booking page
        self.state = state


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_detail = "Validation failed"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_detail = "Resource not found"


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_detail = "Access denied"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_detail = "Resource already exists"
