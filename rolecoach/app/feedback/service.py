from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from rolecoach.app.catalog.contracts import Scenario, ScenarioPersona
from rolecoach.app.conversations.contracts import (
    SENDER_USER,
    ConversationMessage,
    ConversationView,
)
from rolecoach.app.feedback.contracts import (
    DIMENSION_NAMES,
    TIME_AVERAGE,
    TIME_EXCELLENT,
    TIME_GOOD,
    TIME_SLOW,
    DimensionScore,
    FeedbackDraft,
    FeedbackReport,
)
from rolecoach.app.llm.providers import (
    IMPROVEMENT_THRESHOLD,
    STRENGTH_THRESHOLD,
    FeedbackModel,
    KeywordFeedbackModel,
)

LOGGER = logging.getLogger(__name__)

NO_PARTICIPATION_SCORE = 20

# (min chars per minute, min chars per message, rating, label)
TIME_BANDS = (
    (30, 20, TIME_EXCELLENT, "Active participation"),
    (15, 10, TIME_GOOD, "Adequate participation"),
    (5, 5, TIME_AVERAGE, "Passive participation"),
)

_KEYWORD_MODEL = KeywordFeedbackModel()


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def conversation_duration_seconds(view: ConversationView) -> float | None:
    """Span from the run start to its completion or latest message."""
    candidates = [view.persona_run.started_at, view.persona_run.completed_at]
    candidates.extend(row.timestamp for row in view.messages)
    stamps = [stamp for value in candidates if (stamp := _parse_timestamp(value))]
    if len(stamps) < 2:
        return None
    return max(0.0, (max(stamps) - min(stamps)).total_seconds())


def rate_time_performance(
    messages: Sequence[ConversationMessage], duration_minutes: float | None
) -> tuple[str, str]:
    """Rate participation by speech density and average message length."""
    user_lines = [row.message for row in messages if row.sender == SENDER_USER]
    total_chars = sum(len(line) for line in user_lines)
    if not user_lines or total_chars == 0:
        return TIME_SLOW, "No participation; time cannot be rated"

    minutes = duration_minutes or 0.0
    density = total_chars / minutes if minutes > 0 else 0.0
    average_length = total_chars / len(user_lines)
    detail = f"density {density:.1f} chars/min, average {average_length:.0f} chars/message"

    for min_density, min_length, rating, label in TIME_BANDS:
        if density >= min_density and average_length >= min_length:
            if rating == TIME_EXCELLENT and minutes > 10:
                rating = TIME_GOOD
            elif rating == TIME_GOOD and minutes > 15:
                rating = TIME_AVERAGE
            return rating, f"{label} ({detail})"
    return TIME_SLOW, f"Very passive participation ({detail})"


def _no_participation_draft() -> FeedbackDraft:
    return FeedbackDraft(
        overall_score=NO_PARTICIPATION_SCORE,
        dimension_scores={key: 1 for key in DIMENSION_NAMES},
        strengths=(),
        improvements=tuple(DIMENSION_NAMES.values()),
        next_steps=("Take part in the conversation and state your position.",),
        summary="No trainee messages were recorded for this conversation.",
    )


def _dimension_feedback(name: str, value: int) -> str:
    if value >= STRENGTH_THRESHOLD:
        return f"{name} was a consistent strength in this conversation."
    if value <= IMPROVEMENT_THRESHOLD:
        return f"{name} needs deliberate practice."
    return f"{name} was adequate but can be sharpened."


def build_feedback_report(
    view: ConversationView,
    *,
    model: FeedbackModel | None = None,
    scenario: Scenario | None = None,
    persona: ScenarioPersona | None = None,
) -> FeedbackReport:
    user_lines = [row for row in view.messages if row.sender == SENDER_USER]
    provider = _KEYWORD_MODEL.provider_name
    if not any(row.message.strip() for row in user_lines):
        draft = _no_participation_draft()
    else:
        reviewer = model or _KEYWORD_MODEL
        review_kwargs = {
            "scenario": scenario,
            "persona": persona,
            "persona_name": view.persona_run.persona_name,
            "messages": view.messages,
        }
        try:
            draft = reviewer.review(**review_kwargs)
            provider = reviewer.provider_name
        except Exception:
            LOGGER.exception(
                "feedback review failed for %s, using keyword review",
                view.persona_run.run_id,
            )
            draft = _KEYWORD_MODEL.review(**review_kwargs)

    scores = tuple(
        DimensionScore(
            category=key,
            name=name,
            score=draft.dimension_scores.get(key, 1),
            feedback=_dimension_feedback(name, draft.dimension_scores.get(key, 1)),
        )
        for key, name in DIMENSION_NAMES.items()
    )
    duration = conversation_duration_seconds(view)
    duration_minutes = round(duration / 60, 2) if duration is not None else None
    rating, rating_feedback = rate_time_performance(view.messages, duration_minutes)
    average_response = (
        round(duration / len(user_lines), 1) if duration and user_lines else None
    )

    return FeedbackReport(
        conversation_id=view.persona_run.run_id,
        overall_score=draft.overall_score,
        scores=scores,
        strengths=draft.strengths,
        improvements=draft.improvements,
        summary=draft.summary,
        conversation_duration_minutes=duration_minutes,
        average_response_time_seconds=average_response,
        time_performance=rating,
        created_at=datetime.now(timezone.utc).isoformat(),
        time_performance_feedback=rating_feedback,
        next_steps=draft.next_steps,
        provider=provider,
    )
