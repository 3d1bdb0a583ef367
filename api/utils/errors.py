"""
API error types
Rendered by the app-level handlers as {"error": detail, "code"?: code, "timestamp": int}
"""
from typing import Optional

from fastapi import HTTPException


class APIError(HTTPException):
    """Base class for API errors"""
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=message)
        self.code = code


class BadRequestError(APIError):
    status_code = 400


class UnauthorizedError(APIError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated", code: Optional[str] = "NO_SESSION"):
        super().__init__(message, code)


class PaymentRequiredError(APIError):
    status_code = 402


class ForbiddenError(APIError):
    status_code = 403


class ResourceNotFoundError(APIError):
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found" if identifier is None else f"{resource} '{identifier}' not found"
        super().__init__(message)


class ConflictError(APIError):
    status_code = 409


class InternalServerError(APIError):
    status_code = 500


class ServiceUnavailableError(APIError):
    status_code = 503


def require_available(service, name: str):
    """Return the service, or raise 503 when it is missing or unconfigured"""
    if service is None or not service.is_available():
        raise ServiceUnavailableError(f"{name} is not configured")
    return service
