from __future__ import annotations

from dataclasses import dataclass, field

SENDER_USER = "user"
SENDER_AI = "ai"

MODE_TEXT = "text"
MODE_TTS = "tts"
MODE_REALTIME_VOICE = "realtime_voice"
SUPPORTED_MODES = (MODE_TEXT, MODE_TTS, MODE_REALTIME_VOICE)

RUN_STATUS_ACTIVE = "active"
RUN_STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class ConversationMessage:
    sender: str
    message: str
    timestamp: str
    emotion: str | None = None
    emotion_reason: str | None = None


@dataclass(frozen=True)
class ScenarioRun:
    run_id: str
    user_id: str
    scenario_id: str
    scenario_name: str
    attempt_number: int
    mode: str
    difficulty: int
    status: str
    started_at: str
    completed_at: str | None = None


@dataclass(frozen=True)
class PersonaRun:
    run_id: str
    scenario_run_id: str
    persona_id: str
    persona_name: str
    phase: int
    mode: str
    difficulty: int
    status: str
    turn_count: int
    started_at: str
    completed_at: str | None = None
    persona_snapshot: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationView:
    persona_run: PersonaRun
    scenario_run: ScenarioRun
    messages: tuple[ConversationMessage, ...]


@dataclass(frozen=True)
class MessageExchange:
    conversation: ConversationView
    ai_response: str
    emotion: str | None
    emotion_reason: str | None
    is_completed: bool
