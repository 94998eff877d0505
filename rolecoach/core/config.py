from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MAX_TURNS = 3


@dataclass(frozen=True)
class AppConfig:
    app_name: str
    app_version: str
    environment: str
    max_turns: int
    ai_backend: str
    ai_model: str
    gemini_api_key: str | None
    elevenlabs_api_key: str | None
    elevenlabs_model: str
    custom_tts_url: str | None
    custom_tts_api_key: str | None
    persist_runtime_state: bool


def _read_optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if not value:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _read_bool_env(name: str, default: bool) -> bool:
    value = _read_optional_env(name)
    if value is None:
        return default
    normalized = value.lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _read_int_env(name: str, default: int) -> int:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def load_app_config() -> AppConfig:
    return AppConfig(
        app_name=os.getenv("APP_NAME", "Rolecoach Conversation Trainer"),
        app_version=os.getenv("APP_VERSION", "0.3.0"),
        environment=os.getenv("APP_ENV", "development"),
        max_turns=_read_int_env("CONVERSATION_MAX_TURNS", DEFAULT_MAX_TURNS),
        ai_backend=os.getenv("AI_BACKEND", "deterministic").lower().strip(),
        ai_model=os.getenv("AI_MODEL", "gemini-2.5-flash"),
        gemini_api_key=(
            _read_optional_env("GEMINI_API_KEY") or _read_optional_env("GOOGLE_API_KEY")
        ),
        elevenlabs_api_key=_read_optional_env("ELEVENLABS_API_KEY"),
        elevenlabs_model=os.getenv("ELEVENLABS_MODEL", "eleven_flash_v2_5"),
        custom_tts_url=_read_optional_env("CUSTOM_TTS_URL"),
        custom_tts_api_key=_read_optional_env("CUSTOM_TTS_API_KEY"),
        persist_runtime_state=_read_bool_env("PERSIST_RUNTIME_STATE", False),
    )
