"""Lifecycle bookkeeping for a realtime voice session.

The audio transport (WebSocket, microphone capture, playback) lives outside
this module. ``RealtimeVoiceSession`` only tracks connection status, the
conversation phase, greeting retries and barge-in, consumes the server's
event dictionaries and produces the command dictionaries the transport should
send.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

STATUS_DISCONNECTED = "disconnected"
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_ERROR = "error"

PHASE_IDLE = "idle"
PHASE_ACTIVE = "active"
PHASE_INTERRUPTED = "interrupted"
PHASE_ENDED = "ended"

SIGNAL_AI_DELTA = "ai_delta"
SIGNAL_AI_MESSAGE = "ai_message"
SIGNAL_USER_TRANSCRIPT = "user_transcript"
SIGNAL_SESSION_TERMINATED = "session_terminated"
SIGNAL_ERROR = "error"

MAX_GREETING_RETRIES = 3
BARGE_IN_DELAY_SECONDS = 1.5


class VoiceSessionStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class VoiceSignal:
    kind: str
    text: str = ""
    emotion: str | None = None
    emotion_reason: str | None = None


class RealtimeVoiceSession:
    def __init__(self, *, conversation_id: str, scenario_id: str, persona_id: str) -> None:
        self.conversation_id = conversation_id
        self.scenario_id = scenario_id
        self.persona_id = persona_id
        self.status = STATUS_DISCONNECTED
        self.phase = PHASE_IDLE
        self.is_recording = False
        self.is_ai_speaking = False
        self.is_waiting_for_greeting = False
        self.greeting_retry_count = 0
        self.greeting_failed = False
        self.error: str | None = None
        self._previous_messages: list[dict[str, str]] = []
        self._ai_buffer = ""
        self._conversation_started = False
        self._barge_in_triggered = False
        self._user_voice_started_at: float | None = None
        self._expected_turn_seq = 0

    @property
    def is_resuming(self) -> bool:
        return bool(self._previous_messages)

    def connect(self, previous_messages: list[dict[str, str]] | None = None) -> None:
        if self.phase == PHASE_ENDED:
            raise VoiceSessionStateError("Session has ended; reset the phase first")
        self._previous_messages = list(previous_messages or [])
        self.status = STATUS_CONNECTING
        self.error = None
        self.greeting_failed = False

    def on_open(self) -> dict[str, object]:
        """Mark the channel open and return the ``client.ready`` message."""
        if self.status != STATUS_CONNECTING:
            raise VoiceSessionStateError("on_open called without a pending connect")
        self.status = STATUS_CONNECTED
        self.phase = PHASE_ACTIVE
        self.is_waiting_for_greeting = not self.is_resuming
        self.greeting_retry_count = 0

        ready: dict[str, object] = {"type": "client.ready"}
        if self.is_resuming:
            ready["previousMessages"] = list(self._previous_messages)
            ready["isResuming"] = True
        return ready

    def on_transport_error(self, message: str = "Connection error") -> list[VoiceSignal]:
        self.error = message
        self.status = STATUS_ERROR
        self._reset_greeting()
        return [VoiceSignal(kind=SIGNAL_ERROR, text=message)]

    def on_close(self) -> None:
        self.status = STATUS_DISCONNECTED
        self.is_recording = False
        self.is_ai_speaking = False
        self._reset_greeting()
        if self.phase == PHASE_ENDED:
            return
        self.phase = PHASE_INTERRUPTED if self._conversation_started else PHASE_IDLE

    def disconnect(self) -> None:
        self.on_close()

    def reset_phase(self) -> None:
        self.phase = PHASE_IDLE
        self._conversation_started = False
        self._previous_messages = []

    def handle_event(self, event: dict[str, object], now: float | None = None) -> list[VoiceSignal]:
        event_type = event.get("type")
        current = time.monotonic() if now is None else now

        if event_type == "user.transcription":
            self._user_voice_started_at = None
            transcript = event.get("transcript")
            if isinstance(transcript, str) and transcript:
                return [VoiceSignal(kind=SIGNAL_USER_TRANSCRIPT, text=transcript)]
            return []

        if event_type == "user.speaking.started":
            if self._user_voice_started_at is None:
                self._user_voice_started_at = current
            return []

        if event_type == "audio.delta":
            turn_seq = event.get("turnSeq")
            if isinstance(turn_seq, int) and turn_seq <= self._expected_turn_seq:
                return []
            if event.get("delta"):
                self.is_ai_speaking = True
            return []

        if event_type == "ai.transcription.delta":
            text = event.get("text")
            if isinstance(text, str) and text:
                self._ai_buffer += text
                return [VoiceSignal(kind=SIGNAL_AI_DELTA, text=text)]
            return []

        if event_type == "ai.transcription.done":
            self._conversation_started = True
            self._reset_greeting()
            text = event.get("text")
            full_text = text if isinstance(text, str) and text else self._ai_buffer
            self._ai_buffer = ""
            if not full_text:
                return []
            emotion = event.get("emotion")
            reason = event.get("emotionReason")
            return [
                VoiceSignal(
                    kind=SIGNAL_AI_MESSAGE,
                    text=full_text,
                    emotion=emotion if isinstance(emotion, str) else None,
                    emotion_reason=reason if isinstance(reason, str) else None,
                )
            ]

        if event_type in {"response.done", "response.interrupted"}:
            self.is_ai_speaking = False
            return []

        if event_type == "response.ready":
            self._barge_in_triggered = False
            self._user_voice_started_at = None
            turn_seq = event.get("turnSeq")
            if isinstance(turn_seq, int):
                self._expected_turn_seq = turn_seq - 1
            return []

        if event_type == "session.reconnecting":
            self.error = (
                f"Reconnecting to AI ({event.get('attempt')}/{event.get('maxAttempts')})"
            )
            return []

        if event_type == "session.reconnected":
            self.error = None
            return []

        if event_type == "greeting.retry":
            retry_count = event.get("retryCount")
            if not isinstance(retry_count, int):
                retry_count = self.greeting_retry_count + 1
            self.greeting_retry_count = min(retry_count, MAX_GREETING_RETRIES)
            return []

        if event_type == "greeting.failed":
            self.is_waiting_for_greeting = False
            self.greeting_failed = True
            return []

        if event_type == "session.terminated":
            self.phase = PHASE_ENDED
            reason = event.get("reason")
            self.on_close()
            return [
                VoiceSignal(
                    kind=SIGNAL_SESSION_TERMINATED,
                    text=reason if isinstance(reason, str) and reason else "Session ended",
                )
            ]

        if event_type == "error":
            message = str(event.get("error") or "Unknown voice session error")
            self.error = message
            return [VoiceSignal(kind=SIGNAL_ERROR, text=message)]

        LOGGER.debug("unhandled voice event: %s", event_type)
        return []

    def check_barge_in(self, now: float | None = None) -> list[dict[str, object]]:
        """Cancel the AI response once the user has talked over it long enough."""
        current = time.monotonic() if now is None else now
        if (
            not self.is_ai_speaking
            or self._barge_in_triggered
            or self._user_voice_started_at is None
            or current - self._user_voice_started_at < BARGE_IN_DELAY_SECONDS
        ):
            return []
        self._barge_in_triggered = True
        self._expected_turn_seq += 1
        self.is_ai_speaking = False
        return [{"type": "response.cancel"}]

    def start_recording(self) -> list[dict[str, object]]:
        if self.status != STATUS_CONNECTED:
            raise VoiceSessionStateError("Cannot record while not connected")
        commands: list[dict[str, object]] = []
        if self.is_ai_speaking:
            commands.append({"type": "response.cancel"})
            self.is_ai_speaking = False
        self.is_recording = True
        return commands

    def append_audio(self, chunk_base64: str) -> dict[str, object]:
        if not self.is_recording:
            raise VoiceSessionStateError("Not recording")
        return {"type": "input_audio_buffer.append", "audio": chunk_base64}

    def stop_recording(self) -> list[dict[str, object]]:
        if not self.is_recording:
            return []
        self.is_recording = False
        return [{"type": "input_audio_buffer.commit"}, {"type": "response.create"}]

    def send_text_message(self, text: str) -> list[dict[str, object]]:
        if self.status != STATUS_CONNECTED:
            raise VoiceSessionStateError("Cannot send while not connected")
        if not text.strip():
            return []
        return [
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": text}],
                },
            },
            {"type": "response.create"},
        ]

    def _reset_greeting(self) -> None:
        self.is_waiting_for_greeting = False
        self.greeting_retry_count = 0
        self.greeting_failed = False
