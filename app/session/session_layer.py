"""
Session layer - Redis-backed lookup of the sessions issued by the auth service.

A session is stored under ``session:<token>`` as JSON user data
(``{"user_id": ..., ...}``). This service never issues sessions in production;
``create_session`` exists for tooling and tests.
"""
from typing import Optional, Dict, Any
import logging
import json
import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_session_ttl: int = 86400


def init_redis(host: str, port: int, db: int, session_ttl: int = 86400) -> None:
    """Initialize the Redis connection pool. Call once at app startup."""
    pool = redis.ConnectionPool(
        host=host,
        port=port,
        db=db,
        decode_responses=True,
        max_connections=10
    )
    use_client(redis.Redis(connection_pool=pool), session_ttl)
    logger.info(f"Redis initialized: {host}:{port}/{db}, TTL: {session_ttl}s")


def use_client(client: Any, session_ttl: Optional[int] = None) -> None:
    """Install an already built client (any object with get/setex/delete)."""
    global _redis_client, _session_ttl
    _redis_client = client
    if session_ttl is not None:
        _session_ttl = session_ttl


def _get_redis_client() -> redis.Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def _key(token: str) -> str:
    return f"session:{token}"


def create_session(token: str, user_data: Dict[str, Any]) -> None:
    _get_redis_client().setex(_key(token), _session_ttl, json.dumps(user_data))
    logger.info(f"Session stored for user: {user_data.get('user_id')}")


def get_session(token: str) -> Optional[Dict[str, Any]]:
    """User data of a live session, or None when the token is unknown or expired."""
    if _redis_client is None:
        logger.warning("Session lookup without a Redis client; treating token as signed out")
        return None
    try:
        data = _get_redis_client().get(_key(token))
    except redis.RedisError as e:
        logger.error(f"Session lookup failed: {e}")
        return None
    if data:
        return json.loads(data)
    return None


def extract_token(auth_header: Optional[str]) -> Optional[str]:
    """Extract the bearer token from an Authorization header."""
    if not auth_header:
        return None

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None

    return parts[1]


class TokenAuth:
    """Current-user lookup for a bearer token, backed by the Redis session."""

    def __init__(self, token: Optional[str]):
        self.token = token

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        """Session user data with an "id" key, or None when signed out."""
        if not self.token:
            return None
        data = get_session(self.token)
        if not data or not data.get("user_id"):
            return None
        return {**data, "id": str(data["user_id"])}
