from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from uuid import uuid4

import bcrypt

from rolecoach.app.auth.contracts import (
    ROLE_USER,
    LoginAttempts,
    UserAccount,
)
from rolecoach.app.runtime.store import RuntimeStore

LOGIN_RATE_LIMIT_WINDOW_SECONDS = 5 * 60
MAX_LOGIN_ATTEMPTS = 5
PASSWORD_MIN_LENGTH = 8
NAME_MAX_LENGTH = 50
BCRYPT_ROUNDS = 10
# bcrypt only reads the first 72 bytes of a password.
BCRYPT_MAX_PASSWORD_BYTES = 72
UNKNOWN_CLIENT = "unknown"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


class RegistrationError(ValueError):
    pass


class LoginFailedError(Exception):
    pass


class LoginRateLimitedError(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            f"Too many login attempts. Try again in {retry_after_seconds} seconds."
        )
        self.retry_after_seconds = retry_after_seconds


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(
        _password_bytes(password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    ).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def password_policy_violations(password: str) -> list[str]:
    violations: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        violations.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        violations.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        violations.append("Password must contain a lowercase letter")
    if not re.search(r"[0-9]", password):
        violations.append("Password must contain a digit")
    if not _SPECIAL_CHARACTERS.search(password):
        violations.append("Password must contain a special character")
    return violations


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def register_user(
    *,
    store: RuntimeStore,
    email: str,
    password: str,
    name: str,
    role: str = ROLE_USER,
) -> UserAccount:
    normalized = _normalize_email(email)
    if not _EMAIL_PATTERN.match(normalized):
        raise RegistrationError("A valid email address is required")
    cleaned_name = name.strip()
    if not cleaned_name or len(cleaned_name) > NAME_MAX_LENGTH:
        raise RegistrationError(f"Name must be 1-{NAME_MAX_LENGTH} characters")
    violations = password_policy_violations(password)
    if violations:
        raise RegistrationError("; ".join(violations))
    if normalized in store.user_ids_by_email:
        raise RegistrationError("Email is already registered")

    account = UserAccount(
        user_id=f"user-{uuid4().hex[:12]}",
        email=normalized,
        name=cleaned_name,
        role=role,
        password_hash=hash_password(password),
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    with store.lock:
        if normalized in store.user_ids_by_email:
            raise RegistrationError("Email is already registered")
        store.users_by_id[account.user_id] = account
        store.user_ids_by_email[normalized] = account.user_id
    return account


def login_attempt_key(email: str, client_host: str | None) -> str:
    return f"{client_host or UNKNOWN_CLIENT}:{_normalize_email(email)}"


def _check_rate_limit(store: RuntimeStore, key: str, now: float) -> None:
    attempts = store.login_attempts.get(key)
    if attempts is None:
        return
    elapsed = now - attempts.first_attempt_at
    if elapsed > LOGIN_RATE_LIMIT_WINDOW_SECONDS:
        store.login_attempts.pop(key, None)
        return
    if attempts.count >= MAX_LOGIN_ATTEMPTS:
        raise LoginRateLimitedError(
            max(1, int(LOGIN_RATE_LIMIT_WINDOW_SECONDS - elapsed))
        )


def _record_failed_attempt(store: RuntimeStore, key: str, now: float) -> None:
    attempts = store.login_attempts.get(key)
    if attempts is None or now - attempts.first_attempt_at > LOGIN_RATE_LIMIT_WINDOW_SECONDS:
        store.login_attempts[key] = LoginAttempts(count=1, first_attempt_at=now)
        return
    store.login_attempts[key] = LoginAttempts(
        count=attempts.count + 1, first_attempt_at=attempts.first_attempt_at
    )


def authenticate_user(
    *,
    store: RuntimeStore,
    email: str,
    password: str,
    client_host: str | None = None,
    now: float | None = None,
) -> UserAccount:
    """Check credentials, rate limited per client address and email."""
    normalized = _normalize_email(email)
    key = login_attempt_key(normalized, client_host)
    current = time.time() if now is None else now
    with store.lock:
        _check_rate_limit(store, key, current)

    user_id = store.user_ids_by_email.get(normalized)
    account = store.users_by_id.get(user_id) if user_id else None
    if account is None or not check_password(password, account.password_hash):
        with store.lock:
            _record_failed_attempt(store, key, current)
        raise LoginFailedError("Invalid email or password")

    with store.lock:
        store.login_attempts.pop(key, None)
    return account
