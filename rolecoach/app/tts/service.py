from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass

import httpx

from rolecoach.app.catalog.contracts import (
    EMOTION_ANGER,
    EMOTION_JOY,
    EMOTION_NEUTRAL,
    EMOTION_SADNESS,
    EMOTION_SURPRISE,
)

LOGGER = logging.getLogger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"

FALLBACK_FEMALE_VOICES = frozenset({"empathy", "presentation", "crisis"})

ELEVENLABS_VOICE_IDS = {
    "communication": "onwK4e9ZLuTAKqWW03F9",
    "negotiation": "Yko7PKHZNXotIFUBG7I9",
    "feedback": "IKne3meq5aSn9XLyUdCD",
    "empathy": "XrExE9yKIg1WjnnlVkGX",
    "presentation": "pFZP5JQG7iQjIQuC4Bku",
    "crisis": "XB0fDUnXU5powFXDhCwa",
}
DEFAULT_VOICE_BY_GENDER = {
    "male": ELEVENLABS_VOICE_IDS["communication"],
    "female": ELEVENLABS_VOICE_IDS["empathy"],
}

VOICE_SETTINGS_BY_EMOTION = {
    EMOTION_JOY: {"stability": 0.5, "similarity_boost": 0.8, "style": 0.6, "use_speaker_boost": True},
    EMOTION_SADNESS: {"stability": 0.8, "similarity_boost": 0.7, "style": 0.3, "use_speaker_boost": False},
    EMOTION_ANGER: {"stability": 0.3, "similarity_boost": 0.9, "style": 0.8, "use_speaker_boost": True},
    EMOTION_SURPRISE: {"stability": 0.2, "similarity_boost": 0.8, "style": 0.9, "use_speaker_boost": True},
    EMOTION_NEUTRAL: {"stability": 0.5, "similarity_boost": 0.8, "style": 0.5, "use_speaker_boost": True},
}

EMOTION_TONE_PREFIXES = {
    EMOTION_JOY: "In a bright, cheerful tone: ",
    EMOTION_SADNESS: "In a calm, slightly sad tone: ",
    EMOTION_ANGER: "In a firm, strong tone: ",
    EMOTION_SURPRISE: "In a surprised tone: ",
    EMOTION_NEUTRAL: "",
}

_HTML_TAG_PATTERN = re.compile(r"<[^>]*>")
_MARKDOWN_PATTERN = re.compile(r"[*#_`]")


class SpeechSynthesisError(Exception):
    pass


class InvalidSpeechRequest(ValueError):
    pass


@dataclass(frozen=True)
class SpeechResult:
    audio: bytes
    provider: str
    gender: str
    emotion: str
    text_length: int

    @property
    def audio_base64(self) -> str:
        return base64.b64encode(self.audio).decode("ascii")


def clean_speech_text(text: str) -> str:
    return _MARKDOWN_PATTERN.sub("", _HTML_TAG_PATTERN.sub("", text)).strip()


def resolve_gender(persona_id: str, catalog_gender: str | None = None) -> str:
    if catalog_gender in {"male", "female"}:
        return catalog_gender
    return "female" if persona_id in FALLBACK_FEMALE_VOICES else "male"


class SpeechProvider:
    provider_name = "base"

    def synthesize(
        self, *, text: str, persona_id: str, gender: str, emotion: str
    ) -> bytes:
        raise NotImplementedError


class ElevenLabsSpeechProvider(SpeechProvider):
    provider_name = "elevenlabs"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._transport = transport

    def voice_id_for(self, persona_id: str, gender: str) -> str:
        return ELEVENLABS_VOICE_IDS.get(
            persona_id, DEFAULT_VOICE_BY_GENDER.get(gender, DEFAULT_VOICE_BY_GENDER["male"])
        )

    def synthesize(
        self, *, text: str, persona_id: str, gender: str, emotion: str
    ) -> bytes:
        voice_id = self.voice_id_for(persona_id, gender)
        payload = {
            "text": text,
            "model_id": self._model,
            "voice_settings": VOICE_SETTINGS_BY_EMOTION.get(
                emotion, VOICE_SETTINGS_BY_EMOTION[EMOTION_NEUTRAL]
            ),
        }
        with httpx.Client(timeout=30.0, transport=self._transport) as client:
            response = client.post(
                f"{ELEVENLABS_BASE_URL}/text-to-speech/{voice_id}",
                headers={
                    "Accept": "audio/mpeg",
                    "Content-Type": "application/json",
                    "xi-api-key": self._api_key,
                },
                json=payload,
            )
        if response.status_code != 200:
            raise SpeechSynthesisError(
                f"ElevenLabs API error: {response.status_code} - {response.text}"
            )
        return response.content


class CustomSpeechProvider(SpeechProvider):
    """Self-hosted XTTS server."""

    provider_name = "custom"

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str | None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._transport = transport

    def synthesize(
        self, *, text: str, persona_id: str, gender: str, emotion: str
    ) -> bytes:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {
            "text": EMOTION_TONE_PREFIXES.get(emotion, "") + text,
            "speaker": f"{gender}_{persona_id}",
            "language": "ko",
        }
        with httpx.Client(timeout=60.0, transport=self._transport) as client:
            response = client.post(f"{self._api_url}/tts", headers=headers, json=payload)
        if response.status_code != 200:
            raise SpeechSynthesisError(
                f"Custom TTS error: {response.status_code} - {response.text}"
            )
        return response.content


def build_speech_providers(
    *,
    elevenlabs_api_key: str | None,
    elevenlabs_model: str,
    custom_tts_url: str | None,
    custom_tts_api_key: str | None,
) -> list[SpeechProvider]:
    providers: list[SpeechProvider] = []
    if elevenlabs_api_key:
        providers.append(
            ElevenLabsSpeechProvider(api_key=elevenlabs_api_key, model=elevenlabs_model)
        )
    if custom_tts_url:
        providers.append(
            CustomSpeechProvider(api_url=custom_tts_url, api_key=custom_tts_api_key)
        )
    return providers


def generate_speech(
    *,
    providers: list[SpeechProvider],
    text: str | None,
    persona_id: str | None,
    emotion: str | None,
    catalog_gender: str | None = None,
) -> SpeechResult:
    if not text or not persona_id:
        raise InvalidSpeechRequest("text and scenario_id are required")
    cleaned = clean_speech_text(text)
    if not cleaned:
        raise InvalidSpeechRequest("No speakable text after cleanup")
    resolved_emotion = emotion or EMOTION_NEUTRAL
    gender = resolve_gender(persona_id, catalog_gender)

    failures: list[str] = []
    for provider in providers:
        try:
            audio = provider.synthesize(
                text=cleaned,
                persona_id=persona_id,
                gender=gender,
                emotion=resolved_emotion,
            )
        except (SpeechSynthesisError, httpx.HTTPError) as exc:
            LOGGER.warning("tts provider %s failed: %s", provider.provider_name, exc)
            failures.append(f"{provider.provider_name}: {exc}")
            continue
        return SpeechResult(
            audio=audio,
            provider=provider.provider_name,
            gender=gender,
            emotion=resolved_emotion,
            text_length=len(cleaned),
        )

    if not failures:
        raise SpeechSynthesisError("No speech provider is configured")
    raise SpeechSynthesisError("All speech providers failed: " + "; ".join(failures))
