from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


class APIException(HTTPException):
    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)


class ValidationError(APIException):
    """Malformed or missing required input."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class PermissionDeniedError(APIException):
    """The acting user is not allowed to perform this transition."""

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(status_code=403, detail=detail)


class NotFoundError(APIException):
    def __init__(self, detail: str = "Appointment not found"):
        super().__init__(status_code=404, detail=detail)


class InvalidStateError(APIException):
    """Attempted transition is not permitted from the current status."""

    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


class UnavailableError(APIException):
    """Availability check failed at booking time."""

    def __init__(self, detail: str = "Practitioner is not available at this time. Please choose another time."):
        super().__init__(status_code=409, detail=detail)


class TransientIOError(APIException):
    """Store or notification call failed for infrastructure reasons."""

    def __init__(self, detail: str = "Service temporarily unavailable. Please try again."):
        super().__init__(status_code=503, detail=detail)


def create_error_response(error_message: str, status_code: int = 400) -> dict:
    """Create a standardized error response"""
    return {
        "success": False,
        "data": None,
        "error": error_message
    }

async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Custom exception handler for HTTPException"""
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.detail, exc.status_code)
    )
