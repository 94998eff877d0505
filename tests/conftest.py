from __future__ import annotations

import pytest

import rolecoach.app.auth.access as auth_access
from rolecoach.app.runtime.store import (
    clear_runtime_state_persistence,
    reset_runtime_store,
    runtime_store,
)

TEST_JWT_SECRET = "test-signing-secret-with-enough-length"


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(auth_access, "BCRYPT_ROUNDS", 4)
    clear_runtime_state_persistence()
    reset_runtime_store(runtime_store)
