from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


ANONYMOUS_ROLES = ["guest"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def decode_bearer_token(request: Request) -> dict | None:
    """Claims of the request's bearer token, or None when it is missing or invalid."""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer ") :]
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    return claims if isinstance(claims, dict) else None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer_token(request)
    if claims is None or claims.get("sub") is None:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(claims["sub"]), roles=[str(role) for role in roles])
