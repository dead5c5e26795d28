from .session_layer import (
    init_redis,
    use_client,
    create_session,
    get_session,
    extract_token,
    TokenAuth,
)

__all__ = [
    "init_redis",
    "use_client",
    "create_session",
    "get_session",
    "extract_token",
    "TokenAuth",
]
