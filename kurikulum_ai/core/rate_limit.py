"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def client_key(request: Request) -> str:
    """Limit per calling user when the upstream proxy forwards one, else per address."""
    user_id = request.headers.get("X-User-Id", "").strip()
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=client_key)
