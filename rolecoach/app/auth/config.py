from __future__ import annotations

import os
from dataclasses import dataclass

TOKEN_COOKIE_NAME = "token"


@dataclass(frozen=True)
class AuthSettings:
    jwt_secret: str | None
    jwt_algorithm: str
    token_ttl_days: int
    remember_me_ttl_days: int
    realtime_token_ttl_seconds: int


def load_auth_settings() -> AuthSettings:
    secret = (os.getenv("JWT_SECRET") or "").strip()
    return AuthSettings(
        jwt_secret=secret or None,
        jwt_algorithm="HS256",
        token_ttl_days=7,
        remember_me_ttl_days=30,
        realtime_token_ttl_seconds=5 * 60,
    )
