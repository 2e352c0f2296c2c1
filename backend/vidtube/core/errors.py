"""Domain errors. Each carries the HTTP status and a client-safe message."""

from fastapi import status


class ApiError(Exception):
    """Base class for errors rendered as a `{code, data, message}` envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"


class UploadFailedError(ValidationError):
    message = "File upload failed"


class UnauthorizedError(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Unauthorized request"


class NotFoundError(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Resource not found"


class ConflictError(ApiError):
    status_code = status.HTTP_409_CONFLICT
    message = "Resource already exists"


class GoneError(ApiError):
    status_code = status.HTTP_410_GONE
    message = "Resource has expired"


class InternalError(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Something went wrong"


class DeliveryError(InternalError):
    message = "Failed to deliver verification code"


# OTP challenge outcomes


class OtpNotFoundError(NotFoundError):
    message = "No active OTP found for this email. Please request a new one."


class OtpExpiredError(GoneError):
    message = "OTP has expired. Please request a new one."


class OtpMismatchError(UnauthorizedError):
    message = "Invalid OTP code"


# Token verification outcomes


class TokenInvalidError(UnauthorizedError):
    message = "Invalid token"


class TokenExpiredError(UnauthorizedError):
    message = "Token has expired"
