"""
Session Middleware - resolves the bearer token of each HTTP request against Redis.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from typing import Callable
from app.session import extract_token, get_session


class SessionMiddleware(BaseHTTPMiddleware):
    """Puts token, session and user_id on request.state (empty when signed out)."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.session = {}
        request.state.token = extract_token(request.headers.get("authorization"))
        request.state.user_id = None

        if request.state.token:
            user_data = get_session(request.state.token)
            if user_data:
                request.state.session = user_data
                request.state.user_id = str(user_data.get("user_id") or "") or None

        return await call_next(request)
