from __future__ import annotations

import time

import jwt
import pytest

from rolecoach.app.auth.access import (
    LoginFailedError,
    LoginRateLimitedError,
    RegistrationError,
    authenticate_user,
    check_password,
    hash_password,
    login_attempt_key,
    password_policy_violations,
    register_user,
)
from rolecoach.app.auth.config import AuthSettings, load_auth_settings
from rolecoach.app.auth.verify import (
    TOKEN_TYPE_REALTIME,
    AuthConfigurationError,
    AuthVerificationError,
    issue_access_token,
    issue_token,
    verify_request_token,
    verify_token,
)
from rolecoach.app.runtime.store import runtime_store

STRONG_PASSWORD = "Trainee#2025"


def _settings(secret: str | None = "unit-test-secret-0123456789abcdef") -> AuthSettings:
    return AuthSettings(
        jwt_secret=secret,
        jwt_algorithm="HS256",
        token_ttl_days=7,
        remember_me_ttl_days=30,
        realtime_token_ttl_seconds=300,
    )


def test_password_hash_round_trip_and_mismatch() -> None:
    hashed = hash_password(STRONG_PASSWORD)

    assert hashed.startswith("$2b$")
    assert hashed != hash_password(STRONG_PASSWORD)
    assert check_password(STRONG_PASSWORD, hashed) is True
    assert check_password("wrong", hashed) is False


@pytest.mark.parametrize(
    "stored", ["not-a-hash", "pbkdf2_sha256$many$salt$digest", "$2b$xx$broken"]
)
def test_malformed_stored_hash_never_matches(stored: str) -> None:
    assert check_password(STRONG_PASSWORD, stored) is False


def test_password_policy_lists_every_violation() -> None:
    violations = password_policy_violations("abc")

    assert len(violations) == 4
    assert password_policy_violations(STRONG_PASSWORD) == []


def test_register_normalizes_email_and_rejects_duplicates() -> None:
    account = register_user(
        store=runtime_store,
        email="  Trainee@Example.com ",
        password=STRONG_PASSWORD,
        name="Trainee",
    )

    assert account.email == "trainee@example.com"
    assert runtime_store.user_ids_by_email["trainee@example.com"] == account.user_id

    with pytest.raises(RegistrationError, match="already registered"):
        register_user(
            store=runtime_store,
            email="trainee@example.com",
            password=STRONG_PASSWORD,
            name="Again",
        )


@pytest.mark.parametrize(
    ("email", "password", "name"),
    [
        ("not-an-email", STRONG_PASSWORD, "Name"),
        ("user@example.com", "weakpass", "Name"),
        ("user@example.com", STRONG_PASSWORD, ""),
        ("user@example.com", STRONG_PASSWORD, "x" * 51),
    ],
)
def test_register_rejects_invalid_input(email: str, password: str, name: str) -> None:
    with pytest.raises(RegistrationError):
        register_user(store=runtime_store, email=email, password=password, name=name)


def test_login_rate_limit_after_five_failures() -> None:
    register_user(
        store=runtime_store,
        email="limited@example.com",
        password=STRONG_PASSWORD,
        name="Limited",
    )
    now = 1_000.0
    for _ in range(5):
        with pytest.raises(LoginFailedError):
            authenticate_user(
                store=runtime_store,
                email="limited@example.com",
                password="Wrong#2025",
                now=now,
            )

    with pytest.raises(LoginRateLimitedError) as excinfo:
        authenticate_user(
            store=runtime_store,
            email="limited@example.com",
            password=STRONG_PASSWORD,
            now=now + 60,
        )
    assert excinfo.value.retry_after_seconds == 240

    account = authenticate_user(
        store=runtime_store,
        email="limited@example.com",
        password=STRONG_PASSWORD,
        now=now + 301,
    )
    assert account.name == "Limited"
    assert runtime_store.login_attempts == {}


def test_access_token_round_trip_and_remember_me_expiry() -> None:
    settings = _settings()

    token = issue_access_token(user_id="user-1", role="user", settings=settings)
    long_token = issue_access_token(
        user_id="user-1", role="user", settings=settings, remember_me=True
    )
    context = verify_token(token, settings)

    assert context.user_id == "user-1"
    assert context.role == "user"
    short_exp = jwt.decode(token, options={"verify_signature": False})["exp"]
    long_exp = jwt.decode(long_token, options={"verify_signature": False})["exp"]
    assert abs((long_exp - short_exp) - 23 * 24 * 60 * 60) <= 1


def test_realtime_token_is_not_an_access_token() -> None:
    settings = _settings()
    token = issue_token(
        user_id="user-1",
        role="user",
        settings=settings,
        ttl_seconds=300,
        token_type=TOKEN_TYPE_REALTIME,
    )

    assert verify_token(token, settings, token_type=TOKEN_TYPE_REALTIME).user_id == "user-1"
    with pytest.raises(AuthVerificationError, match="type"):
        verify_token(token, settings)


def test_expired_and_foreign_tokens_are_rejected() -> None:
    settings = _settings()
    expired = jwt.encode(
        {"sub": "user-1", "exp": int(time.time()) - 10},
        "unit-test-secret-0123456789abcdef",
        algorithm="HS256",
    )
    foreign = jwt.encode(
        {"sub": "user-1", "exp": int(time.time()) + 60},
        "another-secret-0123456789abcdef00",
        algorithm="HS256",
    )

    for token in (expired, foreign):
        with pytest.raises(AuthVerificationError):
            verify_token(token, settings)


def test_request_token_prefers_header_then_cookie() -> None:
    settings = _settings()
    token = issue_access_token(user_id="user-9", role="admin", settings=settings)

    assert verify_request_token(f"Bearer {token}", None, settings).user_id == "user-9"
    assert verify_request_token(None, token, settings).role == "admin"
    with pytest.raises(AuthVerificationError):
        verify_request_token(None, None, settings)
    with pytest.raises(AuthVerificationError):
        verify_request_token(f"Token {token}", None, settings)


def test_missing_secret_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("JWT_SECRET", raising=False)

    settings = load_auth_settings()

    assert settings.jwt_secret is None
    with pytest.raises(AuthConfigurationError):
        issue_access_token(user_id="user-1", role="user", settings=settings)


def test_login_rate_limit_is_tracked_per_client_address() -> None:
    register_user(
        store=runtime_store,
        email="shared@example.com",
        password=STRONG_PASSWORD,
        name="Shared",
    )
    now = 2_000.0
    for _ in range(5):
        with pytest.raises(LoginFailedError):
            authenticate_user(
                store=runtime_store,
                email="shared@example.com",
                password="Wrong#2025",
                client_host="10.0.0.1",
                now=now,
            )

    with pytest.raises(LoginRateLimitedError):
        authenticate_user(
            store=runtime_store,
            email="Shared@Example.com",
            password=STRONG_PASSWORD,
            client_host="10.0.0.1",
            now=now + 1,
        )
    account = authenticate_user(
        store=runtime_store,
        email="shared@example.com",
        password=STRONG_PASSWORD,
        client_host="10.0.0.2",
        now=now + 1,
    )

    assert account.email == "shared@example.com"
    assert login_attempt_key("Shared@Example.com", "10.0.0.1") in runtime_store.login_attempts
    assert login_attempt_key("shared@example.com", None) == "unknown:shared@example.com"
