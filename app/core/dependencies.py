"""
FastAPI dependencies for route protection and service lookup.
"""
from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.core.exceptions import NotAuthenticated, SessionExpired
from app.service.ride_backend import RideBackend, ride_backend
from typing import Dict, Any

# Security scheme for OpenAPI docs (shows lock icon and Authorization header)
bearer_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Session token issued by the campus auth service",
    auto_error=False,
)


async def validate_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """
    Validates the session loaded by the middleware.

    Returns:
        Session user data, with user_id

    Raises:
        NotAuthenticated: No token provided
        SessionExpired: Token not found in Redis
    """
    if not request.state.token:
        raise NotAuthenticated()

    if not request.state.user_id:
        raise SessionExpired()

    return request.state.session


async def get_current_user_id(session: Dict[str, Any] = Depends(validate_session)) -> str:
    return str(session["user_id"])


def get_backend() -> RideBackend:
    """The backend routes talk to. Overridden in tests."""
    return ride_backend
