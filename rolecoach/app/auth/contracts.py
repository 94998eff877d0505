from __future__ import annotations

from dataclasses import dataclass

ROLE_USER = "user"
ROLE_OPERATOR = "operator"
ROLE_ADMIN = "admin"
ADMIN_ROLES = frozenset({ROLE_OPERATOR, ROLE_ADMIN})


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    access_mode: str
    access_token: str | None = None
    role: str = ROLE_USER


@dataclass(frozen=True)
class UserAccount:
    user_id: str
    email: str
    name: str
    role: str
    password_hash: str
    created_at: str


@dataclass(frozen=True)
class LoginAttempts:
    count: int
    first_attempt_at: float
