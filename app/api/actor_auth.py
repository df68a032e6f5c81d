import logging

import jwt
from fastapi import HTTPException, Request, status
from fastapi.security.utils import get_authorization_scheme_param

from app.domain.travelers.service import AuthenticatedActor
from app.infra.auth import decode_access_token
from app.settings import settings

logger = logging.getLogger(__name__)

ACTOR_ROLES = {"traveler", "guide", "admin"}


def _build_auth_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _actor_from_token(token: str) -> AuthenticatedActor:
    try:
        claims = decode_access_token(token, settings.auth_secret_key)
    except jwt.ExpiredSignatureError as exc:
        logger.info("actor_token_expired")
        raise _build_auth_exception() from exc
    except jwt.InvalidTokenError as exc:
        logger.info("actor_token_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise _build_auth_exception() from exc

    role = claims.get("role") or "traveler"
    if role not in ACTOR_ROLES:
        raise _build_auth_exception()
    return AuthenticatedActor(id=str(claims["sub"]), role=role, email=claims.get("email"))


async def require_actor(request: Request) -> AuthenticatedActor:
    cached: AuthenticatedActor | None = getattr(request.state, "actor", None)
    if cached:
        return cached
    authorization = request.headers.get("Authorization")
    scheme, token = get_authorization_scheme_param(authorization)
    if not authorization or scheme.lower() != "bearer" or not token:
        raise _build_auth_exception()
    actor = _actor_from_token(token)
    request.state.actor = actor
    return actor
