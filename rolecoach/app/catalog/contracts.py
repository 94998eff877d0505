from __future__ import annotations

from dataclasses import dataclass, field

EMOTION_JOY = "joy"
EMOTION_SADNESS = "sadness"
EMOTION_ANGER = "anger"
EMOTION_SURPRISE = "surprise"
EMOTION_NEUTRAL = "neutral"
SUPPORTED_EMOTIONS = (
    EMOTION_JOY,
    EMOTION_SADNESS,
    EMOTION_ANGER,
    EMOTION_SURPRISE,
    EMOTION_NEUTRAL,
)

EMOTION_EMOJIS = {
    EMOTION_JOY: "\U0001f60a",
    EMOTION_SADNESS: "\U0001f622",
    EMOTION_ANGER: "\U0001f620",
    EMOTION_SURPRISE: "\U0001f632",
    EMOTION_NEUTRAL: "\U0001f610",
}


@dataclass(frozen=True)
class PersonaProfile:
    """MBTI-level persona traits shared by every scenario that references them."""

    persona_id: str
    mbti: str
    communication_style: str
    opening_style: str
    win_conditions: tuple[str, ...] = ()
    personal_values: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScenarioPersona:
    persona_id: str
    name: str
    role: str
    department: str
    mbti: str | None = None
    gender: str = "male"
    stance: str | None = None
    goal: str | None = None
    images: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Scenario:
    scenario_id: str
    title: str
    description: str
    difficulty: int
    player_role: str
    objectives: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    personas: tuple[ScenarioPersona, ...] = ()
