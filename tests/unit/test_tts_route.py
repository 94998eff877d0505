from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

import rolecoach.app.api.app as api_app
from rolecoach.app.tts.service import SpeechProvider, SpeechSynthesisError


class RecordingProvider(SpeechProvider):
    provider_name = "recording"

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []

    def synthesize(self, *, text: str, persona_id: str, gender: str, emotion: str) -> bytes:
        self.calls.append(
            {"text": text, "persona_id": persona_id, "gender": gender, "emotion": emotion}
        )
        return b"audio-bytes"


class BrokenProvider(SpeechProvider):
    provider_name = "broken"

    def synthesize(self, *, text: str, persona_id: str, gender: str, emotion: str) -> bytes:
        raise SpeechSynthesisError("voice quota exhausted")


def _client(monkeypatch: pytest.MonkeyPatch, providers: list[SpeechProvider]) -> tuple[TestClient, dict[str, str]]:
    monkeypatch.setattr(api_app, "build_speech_providers", lambda **_kwargs: providers)
    client = TestClient(api_app.create_app())
    response = client.post(
        "/api/auth/register",
        json={"email": "voice@example.com", "password": "Trainee#2025", "name": "Voice"},
    )
    client.cookies.clear()
    return client, {"Authorization": f"Bearer {response.json()['token']}"}


def test_generate_returns_base64_audio_and_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = RecordingProvider()
    client, headers = _client(monkeypatch, [provider])

    response = client.post(
        "/api/tts/generate",
        json={"text": "<p>We need to *talk*.</p>", "scenario_id": "presentation", "emotion": "surprise"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert base64.b64decode(body["audio"]) == b"audio-bytes"
    assert body["gender"] == "female"
    assert body["emotion"] == "surprise"
    assert body["text_length"] == len("We need to talk.")
    assert body["provider"] == "recording"
    assert provider.calls[0]["text"] == "We need to talk."


def test_generate_validates_input(monkeypatch: pytest.MonkeyPatch) -> None:
    client, headers = _client(monkeypatch, [RecordingProvider()])

    missing = client.post("/api/tts/generate", json={"text": "Hi"}, headers=headers)
    empty = client.post(
        "/api/tts/generate",
        json={"text": "<br/>**", "scenario_id": "crisis"},
        headers=headers,
    )

    assert missing.status_code == 400
    assert empty.status_code == 400


def test_generate_reports_provider_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    client, headers = _client(monkeypatch, [BrokenProvider()])

    response = client.post(
        "/api/tts/generate",
        json={"text": "Hello", "scenario_id": "crisis"},
        headers=headers,
    )

    assert response.status_code == 500
    assert "voice quota exhausted" in response.json()["detail"]


def test_generate_requires_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(api_app, "build_speech_providers", lambda **_kwargs: [])
    client = TestClient(api_app.create_app())

    assert client.post("/api/tts/generate", json={"text": "Hi"}).status_code == 401
