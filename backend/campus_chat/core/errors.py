"""Typed errors raised by the membership and message controllers.

Each error carries the HTTP status the REST layer answers with. The realtime
gateway reports the same errors as ``error`` events and keeps the socket open.
"""
from fastapi import status


class ChatError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input"


class AuthError(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"


class ForbiddenError(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not permitted"


class NotFoundError(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictError(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting state"


class CapacityError(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Chat is full"


class ExpiredError(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Edit window has expired"


class RateLimitError(ChatError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many messages, slow down"

    def __init__(self, message: str = None, limit: int = 0, retry_after_seconds: int = 0):
        super().__init__(message)
        self.headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "Retry-After": str(retry_after_seconds),
        }
