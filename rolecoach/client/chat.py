from __future__ import annotations

import base64
import binascii
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from rolecoach.app.scoring.contracts import ScoreBreakdown
from rolecoach.app.scoring.service import calculate_realtime_score

LOGGER = logging.getLogger(__name__)

API_BASE_URL = os.getenv("ROLECOACH_API_URL", "http://localhost:8000").rstrip("/")

INPUT_MODE_TEXT = "text"
INPUT_MODE_TTS = "tts"
DISPLAY_MODE_MESSENGER = "messenger"
DISPLAY_MODE_CHARACTER = "character"

VARIANT_DEFAULT = "default"
VARIANT_DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = VARIANT_DEFAULT


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if isinstance(detail, str) and detail:
            return detail
    return f"HTTP {response.status_code}"


class ChatSession:
    """Client-side state for one conversation window.

    ``client`` is any ``httpx.Client``; tests pass a FastAPI ``TestClient``.
    ``speaker`` receives decoded audio bytes whenever an AI message is voiced.
    """

    def __init__(
        self,
        *,
        conversation_id: str,
        client: httpx.Client | None = None,
        token: str | None = None,
        speaker: Callable[[bytes], None] | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._client = client or httpx.Client(base_url=API_BASE_URL, timeout=45.0)
        self._token = token
        self._speaker = speaker
        self.messages: list[dict[str, object]] = []
        self.persona_id: str | None = None
        self.scenario_id: str | None = None
        self.persona_images: dict[str, str] = {}
        self._fallback_image: str | None = None
        self.is_completed = False
        self.is_loading = False
        self.input_mode = INPUT_MODE_TEXT
        self.display_mode = DISPLAY_MODE_MESSENGER
        self.notifications: list[Notification] = []
        self.last_audio: bytes | None = None
        self._last_spoken_index: int | None = None

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    def _path(self, suffix: str = "") -> str:
        return f"/api/conversations/{self.conversation_id}{suffix}"

    def _notify_failure(self, title: str, description: str) -> None:
        LOGGER.warning("%s: %s", title, description)
        self.notifications.append(
            Notification(title=title, description=description, variant=VARIANT_DESTRUCTIVE)
        )

    def _apply_conversation(self, conversation: object) -> None:
        if not isinstance(conversation, dict):
            return
        messages = conversation.get("messages")
        if isinstance(messages, list):
            self.messages = [row for row in messages if isinstance(row, dict)]
        persona_id = conversation.get("persona_id")
        if isinstance(persona_id, str):
            self.persona_id = persona_id
        scenario_id = conversation.get("scenario_id")
        if isinstance(scenario_id, str):
            self.scenario_id = scenario_id
        images = conversation.get("persona_images")
        if isinstance(images, dict):
            self.persona_images = {
                str(key): value for key, value in images.items() if isinstance(value, str)
            }
        image = conversation.get("persona_image")
        if isinstance(image, str):
            self._fallback_image = image
        self.is_completed = conversation.get("status") == "completed"

    def refresh(self) -> dict[str, object] | None:
        try:
            response = self._client.get(self._path(), headers=self._headers())
        except httpx.HTTPError as exc:
            self._notify_failure("Error", f"Could not load the conversation: {exc}")
            return None
        if response.status_code != 200:
            self._notify_failure("Error", _error_detail(response))
            return None
        body = response.json()
        self._apply_conversation(body)
        return body

    def send_message(self, text: str, *, skip_turn: bool = False) -> dict[str, object] | None:
        """Send one user line, or an empty skip turn when ``skip_turn`` is set.

        The user message is shown immediately and removed again if the
        request fails.
        """
        trimmed = text.strip()
        if (not trimmed and not skip_turn) or self.is_loading or self.is_completed:
            return None

        optimistic: dict[str, object] | None = None
        if trimmed:
            optimistic = {
                "sender": "user",
                "message": trimmed,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.messages.append(optimistic)

        self.is_loading = True
        try:
            response = self._client.post(
                self._path("/messages"),
                json={"message": trimmed},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            self._rollback(optimistic)
            self._notify_failure("Error", f"Failed to send message: {exc}")
            return None
        finally:
            self.is_loading = False

        if response.status_code != 200:
            self._rollback(optimistic)
            self._notify_failure("Error", _error_detail(response))
            return None

        body = response.json()
        self._apply_conversation(body.get("conversation"))
        self.is_completed = bool(body.get("is_completed")) or self.is_completed
        if self.input_mode == INPUT_MODE_TTS:
            self.speak_latest()
        return body

    def _rollback(self, optimistic: dict[str, object] | None) -> None:
        if optimistic is None:
            return
        self.messages = [row for row in self.messages if row is not optimistic]

    def score(self) -> ScoreBreakdown:
        return calculate_realtime_score(self.messages)

    def latest_ai_message(self) -> tuple[int, dict[str, object]] | None:
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].get("sender") == "ai":
                return index, self.messages[index]
        return None

    @property
    def current_emotion(self) -> str:
        latest = self.latest_ai_message()
        if latest is None:
            return "neutral"
        emotion = latest[1].get("emotion")
        return emotion if isinstance(emotion, str) and emotion else "neutral"

    @property
    def current_image(self) -> str | None:
        """Persona image for the character view, following the latest emotion."""
        return (
            self.persona_images.get(self.current_emotion)
            or self.persona_images.get("neutral")
            or self._fallback_image
        )

    def set_input_mode(self, mode: str) -> None:
        if mode not in {INPUT_MODE_TEXT, INPUT_MODE_TTS}:
            raise ValueError(f"Unsupported input mode: {mode}")
        self.input_mode = mode
        if mode == INPUT_MODE_TTS:
            self.speak_latest()

    def toggle_input_mode(self) -> str:
        self.set_input_mode(
            INPUT_MODE_TEXT if self.input_mode == INPUT_MODE_TTS else INPUT_MODE_TTS
        )
        return self.input_mode

    def set_display_mode(self, mode: str) -> None:
        if mode not in {DISPLAY_MODE_MESSENGER, DISPLAY_MODE_CHARACTER}:
            raise ValueError(f"Unsupported display mode: {mode}")
        self.display_mode = mode

    def toggle_display_mode(self) -> str:
        self.set_display_mode(
            DISPLAY_MODE_MESSENGER
            if self.display_mode == DISPLAY_MODE_CHARACTER
            else DISPLAY_MODE_CHARACTER
        )
        return self.display_mode

    def speak_latest(self) -> bytes | None:
        """Voice the newest AI message unless it was already spoken."""
        latest = self.latest_ai_message()
        if latest is None:
            return None
        index, message = latest
        if index == self._last_spoken_index:
            return None
        self._last_spoken_index = index

        try:
            response = self._client.post(
                "/api/tts/generate",
                json={
                    "text": message.get("message"),
                    "scenario_id": self.persona_id,
                    "emotion": message.get("emotion") or "neutral",
                },
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            self._notify_failure("Speech failed", str(exc))
            return None
        if response.status_code != 200:
            self._notify_failure("Speech failed", _error_detail(response))
            return None

        try:
            audio = base64.b64decode(str(response.json().get("audio", "")), validate=True)
        except (binascii.Error, ValueError) as exc:
            self._notify_failure("Speech failed", f"Invalid audio payload: {exc}")
            return None
        self.last_audio = audio
        if self._speaker is not None:
            self._speaker(audio)
        return audio

    def save_realtime_transcript(
        self, messages: list[dict[str, object]]
    ) -> dict[str, object] | None:
        try:
            response = self._client.post(
                self._path("/realtime-messages"),
                json={"messages": messages},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            self._notify_failure("Error", f"Failed to save transcript: {exc}")
            return None
        if response.status_code != 200:
            self._notify_failure("Error", _error_detail(response))
            return None
        body = response.json()
        self._apply_conversation(body.get("conversation"))
        return body
