"""
Application exceptions.

Each user-facing error is an HTTPException carrying a {"code", "message"} detail,
so routes can let them propagate and the realtime layer can forward the same
payload over the WebSocket.
"""
from typing import Optional

from fastapi import HTTPException, status


class AppException(HTTPException):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"
    message: str = "Request could not be processed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message},
        )

    def __str__(self) -> str:
        return self.message


class NotAuthenticated(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "NOT_AUTHENTICATED"
    message = "Sign in to continue."


class SessionExpired(AppException):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "SESSION_EXPIRED"
    message = "Session expired. Sign in again."


class AccessDenied(AppException):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"
    message = "You do not have access to this ride request."


class NotFound(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found.")


class InvalidTransition(AppException):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"
    message = "This status change is not allowed."


class DuplicateRequest(AppException):
    status_code = status.HTTP_409_CONFLICT
    code = "DUPLICATE_REQUEST"
    message = "You have already requested this ride."


class EmptyMessage(AppException):
    code = "EMPTY_CONTENT"
    message = "Message content cannot be empty or whitespace only."


class TransientNetworkFailure(AppException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_ERROR"
    message = "The change could not be saved. Please try again."


class FeedDisconnected(Exception):
    """Realtime transport dropped or refused a channel. Handled inside the feed client."""
