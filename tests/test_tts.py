from __future__ import annotations

import base64
import json

import httpx
import pytest

from rolecoach.app.tts.service import (
    ELEVENLABS_VOICE_IDS,
    CustomSpeechProvider,
    ElevenLabsSpeechProvider,
    InvalidSpeechRequest,
    SpeechSynthesisError,
    build_speech_providers,
    clean_speech_text,
    generate_speech,
    resolve_gender,
)


def _failing_transport(status_code: int = 500) -> httpx.MockTransport:
    return httpx.MockTransport(
        lambda request: httpx.Response(status_code, text="upstream failure")
    )


def test_clean_speech_text_strips_markup() -> None:
    assert clean_speech_text("<b>**Hello**</b> _there_ `now`") == "Hello there now"


def test_resolve_gender_prefers_catalog_value() -> None:
    assert resolve_gender("communication", "female") == "female"
    assert resolve_gender("crisis") == "female"
    assert resolve_gender("unknown") == "male"


def test_elevenlabs_request_uses_persona_voice_and_emotion_settings() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=b"mp3-bytes")

    provider = ElevenLabsSpeechProvider(
        api_key="xi-key",
        model="eleven_flash_v2_5",
        transport=httpx.MockTransport(handler),
    )
    result = generate_speech(
        providers=[provider],
        text="**We need a plan.**",
        persona_id="communication",
        emotion="anger",
    )

    request = captured[0]
    body = json.loads(request.content)
    assert request.url.path.endswith(ELEVENLABS_VOICE_IDS["communication"])
    assert request.headers["xi-api-key"] == "xi-key"
    assert body["text"] == "We need a plan."
    assert body["voice_settings"]["stability"] == 0.3
    assert result.provider == "elevenlabs"
    assert result.audio_base64 == base64.b64encode(b"mp3-bytes").decode("ascii")
    assert result.text_length == len("We need a plan.")


def test_falls_back_to_custom_server_with_tone_prefix() -> None:
    captured: list[dict[str, object]] = []

    def custom_handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, content=b"wav-bytes")

    providers = [
        ElevenLabsSpeechProvider(
            api_key="xi-key", model="m", transport=_failing_transport()
        ),
        CustomSpeechProvider(
            api_url="http://tts.local/",
            api_key=None,
            transport=httpx.MockTransport(custom_handler),
        ),
    ]

    result = generate_speech(
        providers=providers,
        text="Thank you.",
        persona_id="presentation",
        emotion="joy",
    )

    assert result.provider == "custom"
    assert result.gender == "female"
    assert captured[0]["speaker"] == "female_presentation"
    assert str(captured[0]["text"]).startswith("In a bright, cheerful tone: ")


def test_all_providers_failing_reports_each_failure() -> None:
    providers = [
        ElevenLabsSpeechProvider(api_key="k", model="m", transport=_failing_transport()),
        CustomSpeechProvider(
            api_url="http://tts.local", api_key="c", transport=_failing_transport(503)
        ),
    ]

    with pytest.raises(SpeechSynthesisError, match="elevenlabs.*custom"):
        generate_speech(
            providers=providers, text="Hello", persona_id="crisis", emotion=None
        )


def test_invalid_requests_are_rejected() -> None:
    with pytest.raises(InvalidSpeechRequest):
        generate_speech(providers=[], text="", persona_id="crisis", emotion=None)
    with pytest.raises(InvalidSpeechRequest):
        generate_speech(providers=[], text="**<br>**", persona_id="crisis", emotion=None)


def test_no_configured_provider_is_an_error() -> None:
    assert build_speech_providers(
        elevenlabs_api_key=None,
        elevenlabs_model="m",
        custom_tts_url=None,
        custom_tts_api_key=None,
    ) == []
    with pytest.raises(SpeechSynthesisError, match="No speech provider"):
        generate_speech(providers=[], text="Hello", persona_id="crisis", emotion=None)
