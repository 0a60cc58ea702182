from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    organization_id: str | None = None


def _anonymous() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_current_user(request: Request) -> AuthUser:
    """Resolves the caller from an HS-signed bearer token.

    The ``org`` claim names the caller's organization. Missing or invalid tokens
    yield an anonymous guest; the CRM routes turn that into a 401.
    """
    token = _bearer_token(request)
    if token is None:
        return _anonymous()

    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _anonymous()

    roles = claims.get("roles")
    user = AuthUser(
        sub=str(claims.get("sub", "anonymous")),
        roles=[str(role) for role in roles] if isinstance(roles, list) else ["user"],
        organization_id=str(claims["org"]) if claims.get("org") else None,
    )

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
        context.organization_id = user.organization_id
    return user
