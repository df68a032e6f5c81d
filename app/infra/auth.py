from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

TOKEN_ALGORITHM = "HS256"


def create_access_token(
    subject: str,
    role: str,
    ttl_minutes: int,
    settings,
    email: str | None = None,
) -> str:
    issued_at = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "exp": issued_at + timedelta(minutes=ttl_minutes),
        "iat": issued_at,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.auth_secret_key, algorithm=TOKEN_ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], options={"require": ["sub", "exp"]})
