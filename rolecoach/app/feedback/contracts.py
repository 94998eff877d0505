from __future__ import annotations

from dataclasses import dataclass

DIMENSION_CLARITY_LOGIC = "clarity_logic"
DIMENSION_LISTENING_EMPATHY = "listening_empathy"
DIMENSION_APPROPRIATENESS = "appropriateness_adaptability"
DIMENSION_PERSUASIVENESS = "persuasiveness_impact"
DIMENSION_STRATEGIC = "strategic_communication"

DIMENSION_NAMES = {
    DIMENSION_CLARITY_LOGIC: "Clarity & logic",
    DIMENSION_LISTENING_EMPATHY: "Listening & empathy",
    DIMENSION_APPROPRIATENESS: "Appropriateness & adaptability",
    DIMENSION_PERSUASIVENESS: "Persuasiveness & impact",
    DIMENSION_STRATEGIC: "Strategic communication",
}

TIME_EXCELLENT = "excellent"
TIME_GOOD = "good"
TIME_AVERAGE = "average"
TIME_SLOW = "slow"


@dataclass(frozen=True)
class FeedbackDraft:
    """Review content produced by a feedback model before timing is added."""

    overall_score: int
    dimension_scores: dict[str, int]
    strengths: tuple[str, ...]
    improvements: tuple[str, ...]
    next_steps: tuple[str, ...]
    summary: str


@dataclass(frozen=True)
class DimensionScore:
    category: str
    name: str
    score: int
    feedback: str


@dataclass(frozen=True)
class FeedbackReport:
    conversation_id: str
    overall_score: int
    scores: tuple[DimensionScore, ...]
    strengths: tuple[str, ...]
    improvements: tuple[str, ...]
    summary: str
    conversation_duration_minutes: float | None
    average_response_time_seconds: float | None
    time_performance: str
    created_at: str
    time_performance_feedback: str = ""
    next_steps: tuple[str, ...] = ()
    provider: str = "keyword"
