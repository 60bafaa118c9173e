from fastapi import Request
from fastapi.responses import JSONResponse


class PortalError(Exception):
    """Base exception for portal API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class AuthenticationError(PortalError):
    """Login, token or directory bind failures. Messages never reveal which check failed."""

    def __init__(self, message: str = "Invalid credentials", details: dict | None = None):
        super().__init__(code="authentication_required", message=message, status=401, details=details)


class AuthorizationError(PortalError):
    def __init__(
        self, message: str = "You do not have permission to perform this action", details: dict | None = None
    ):
        super().__init__(code="insufficient_permissions", message=message, status=403, details=details)


class NotFoundError(PortalError):
    def __init__(self, message: str = "Entity not found", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)

    @classmethod
    def for_entity(cls, label: str, entity_id: str) -> "NotFoundError":
        """`<label> with ID <id> not found`, the message every lookup by id uses."""
        return cls(f"{label} with ID {entity_id} not found")


class ConflictError(PortalError):
    def __init__(self, message: str = "Entity already exists", details: dict | None = None):
        super().__init__(code="conflict", message=message, status=409, details=details)


class ValidationFailedError(PortalError):
    def __init__(self, message: str = "Invalid request data", details: dict | None = None):
        super().__init__(code="validation_failed", message=message, status=400, details=details)


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Global exception handler for PortalError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())
