"""FastAPI dependencies: engine lookup, auth and per-route rate limits."""

from fastapi import Request

from prefetch_engine.api.rate_limit import client_ip
from prefetch_engine.errors import AuthError, PermissionDenied, RateLimited, ValidationError
from prefetch_engine.schemas import is_valid_user_id


def get_engine(request: Request):
    return request.app.state.engine


def require_permissions(*required: str):
    """Dependency factory: bearer token must carry every permission in `required`."""

    async def dependency(request: Request) -> frozenset[str]:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthError("Missing bearer token")

        granted = await get_engine(request).verifier.verify(token)
        missing = sorted(set(required) - granted)
        if missing:
            raise PermissionDenied(f"Missing permission: {', '.join(missing)}")
        return granted

    return dependency


def rate_limit(bucket: str):
    """Dependency factory: per-peer ceiling for one route family."""

    async def dependency(request: Request):
        limiter = get_engine(request).rate_limiters[bucket]
        if limiter.is_limited(client_ip(request)):
            raise RateLimited("Too many requests, retry in a minute")

    return dependency


def check_user_id(user_id: str) -> str:
    if not is_valid_user_id(user_id):
        raise ValidationError("userId must be 1-128 characters of letters, digits, '_', '.', ':' or '-'")
    return user_id
