from dataclasses import dataclass
import logging

from jose import JWTError, jwt
from starlette.requests import Request

from dealboard.core.config import get_settings


logger = logging.getLogger("dealboard.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _claim_list(payload: dict, name: str) -> list[str]:
    value = payload.get(name)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the caller from a bearer token.

    Grants come from the ``roles`` and ``permissions`` claims combined. A
    missing or unverifiable token yields the anonymous guest.
    """
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.invalid_token", extra={"error": str(exc)})
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    grants = sorted(set(_claim_list(payload, "roles")) | set(_claim_list(payload, "permissions")))
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=grants or ["user"])
