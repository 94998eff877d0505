from __future__ import annotations

import time

import jwt
from jwt import InvalidTokenError

from rolecoach.app.auth.config import AuthSettings
from rolecoach.app.auth.contracts import ROLE_USER, AuthContext

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REALTIME = "realtime"


class AuthVerificationError(Exception):
    pass


class AuthConfigurationError(Exception):
    pass


def _require_secret(settings: AuthSettings) -> str:
    if not settings.jwt_secret:
        raise AuthConfigurationError(
            "Token signing is not configured (missing JWT_SECRET)"
        )
    return settings.jwt_secret


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthVerificationError("Missing Authorization header")
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthVerificationError("Authorization header must be Bearer token")
    return parts[1].strip()


def issue_token(
    *,
    user_id: str,
    role: str,
    settings: AuthSettings,
    ttl_seconds: int,
    token_type: str = TOKEN_TYPE_ACCESS,
) -> str:
    secret = _require_secret(settings)
    now = int(time.time())
    claims = {
        "sub": user_id,
        "role": role,
        "typ": token_type,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(claims, secret, algorithm=settings.jwt_algorithm)


def issue_access_token(
    *,
    user_id: str,
    role: str,
    settings: AuthSettings,
    remember_me: bool = False,
) -> str:
    days = settings.remember_me_ttl_days if remember_me else settings.token_ttl_days
    return issue_token(
        user_id=user_id,
        role=role,
        settings=settings,
        ttl_seconds=days * 24 * 60 * 60,
    )


def verify_token(
    token: str,
    settings: AuthSettings,
    *,
    token_type: str = TOKEN_TYPE_ACCESS,
) -> AuthContext:
    secret = _require_secret(settings)
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except InvalidTokenError as exc:
        raise AuthVerificationError("Invalid or expired token") from exc

    if claims.get("typ", TOKEN_TYPE_ACCESS) != token_type:
        raise AuthVerificationError("Token type mismatch")
    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AuthVerificationError("Token missing subject claim")
    role = claims.get("role")
    return AuthContext(
        user_id=user_id,
        access_mode="authenticated",
        access_token=token,
        role=role if isinstance(role, str) and role else ROLE_USER,
    )


def verify_request_token(
    authorization: str | None,
    cookie_token: str | None,
    settings: AuthSettings,
) -> AuthContext:
    """Verify a bearer header, falling back to the session cookie."""
    if authorization:
        return verify_token(_extract_bearer_token(authorization), settings)
    if cookie_token and cookie_token.strip():
        return verify_token(cookie_token.strip(), settings)
    raise AuthVerificationError("Missing Authorization header")
