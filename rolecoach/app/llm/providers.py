from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from rolecoach.app.catalog.contracts import (
    EMOTION_ANGER,
    EMOTION_JOY,
    EMOTION_NEUTRAL,
    EMOTION_SURPRISE,
    SUPPORTED_EMOTIONS,
    PersonaProfile,
    Scenario,
    ScenarioPersona,
)
from rolecoach.app.conversations.contracts import SENDER_USER, ConversationMessage
from rolecoach.app.feedback.contracts import (
    DIMENSION_APPROPRIATENESS,
    DIMENSION_CLARITY_LOGIC,
    DIMENSION_LISTENING_EMPATHY,
    DIMENSION_NAMES,
    DIMENSION_PERSUASIVENESS,
    DIMENSION_STRATEGIC,
    FeedbackDraft,
)
from rolecoach.app.scoring.service import (
    CATEGORY_AGGRESSIVE,
    CATEGORY_CONCRETE,
    CATEGORY_DISMISSIVE,
    CATEGORY_EMPATHY,
    CATEGORY_POLITENESS,
    CATEGORY_QUESTION,
    CATEGORY_SOLUTION,
    calculate_realtime_score,
    score_message,
)

LOGGER = logging.getLogger(__name__)

HISTORY_WINDOW = 12


class PersonaModelError(Exception):
    pass


class FeedbackModelError(Exception):
    pass


@dataclass(frozen=True)
class PersonaReply:
    content: str
    emotion: str
    emotion_reason: str


class PersonaModel:
    provider_name = "base"

    def generate_reply(
        self,
        *,
        scenario: Scenario,
        persona: ScenarioPersona,
        profile: PersonaProfile | None,
        difficulty: int,
        messages: Sequence[ConversationMessage],
        user_message: str | None,
    ) -> PersonaReply:
        raise NotImplementedError


class DeterministicPersonaModel(PersonaModel):
    """Scripted persona used offline and in tests."""

    provider_name = "deterministic"

    def generate_reply(
        self,
        *,
        scenario: Scenario,
        persona: ScenarioPersona,
        profile: PersonaProfile | None,
        difficulty: int,
        messages: Sequence[ConversationMessage],
        user_message: str | None,
    ) -> PersonaReply:
        if not messages:
            stance = persona.stance or scenario.description
            return PersonaReply(
                content=f"I'm {persona.name}, {persona.role}. {stance}",
                emotion=EMOTION_NEUTRAL,
                emotion_reason="opening the conversation",
            )

        if user_message is None:
            emotion = EMOTION_ANGER if difficulty >= 3 else EMOTION_SURPRISE
            return PersonaReply(
                content="You have nothing to say? I expected a clear answer from you.",
                emotion=emotion,
                emotion_reason="the trainee skipped their turn",
            )

        scored = score_message(user_message)
        goal = persona.goal or "a workable outcome"
        if scored.delta >= 5:
            return PersonaReply(
                content=f"That helps. If we can keep {goal.lower()} in view, I can work with that.",
                emotion=EMOTION_JOY,
                emotion_reason="the trainee addressed the persona's concerns",
            )
        if scored.delta < 0:
            return PersonaReply(
                content="That is not acceptable. You are not taking this seriously.",
                emotion=EMOTION_ANGER if difficulty >= 2 else EMOTION_NEUTRAL,
                emotion_reason="the trainee sounded dismissive",
            )
        return PersonaReply(
            content=f"I hear you, but my position has not changed. I still need {goal.lower()}.",
            emotion=EMOTION_NEUTRAL,
            emotion_reason="no new information from the trainee",
        )


def _persona_prompt(
    *,
    scenario: Scenario,
    persona: ScenarioPersona,
    profile: PersonaProfile | None,
    difficulty: int,
    messages: Sequence[ConversationMessage],
    user_message: str | None,
) -> str:
    history = "\n".join(
        f"{'Trainee' if row.sender == SENDER_USER else persona.name}: {row.message}"
        for row in list(messages)[-HISTORY_WINDOW:]
    )
    style = profile.communication_style if profile else "balanced communication"
    win_conditions = ", ".join(profile.win_conditions) if profile else "reach a goal"
    turn_instruction = (
        "The trainee stayed silent this turn; react to the silence."
        if user_message is None
        else f"Respond to the trainee's last message: {user_message}"
    )
    return (
        "You are role-playing a workplace persona in a communication training "
        "exercise. Stay in character. Return strict JSON with keys "
        "content(string), emotion(one of "
        f"{', '.join(SUPPORTED_EMOTIONS)}) and emotion_reason(string).\n"
        f"Scenario: {scenario.title} - {scenario.description}\n"
        f"Trainee role: {scenario.player_role}\n"
        f"Persona: {persona.name}, {persona.role} ({persona.department})\n"
        f"Stance: {persona.stance or 'not specified'}\n"
        f"Goal: {persona.goal or 'not specified'}\n"
        f"Communication style: {style}\n"
        f"Win conditions: {win_conditions}\n"
        f"Difficulty (1 easy - 4 hard): {difficulty}\n"
        f"Conversation so far:\n{history or '(no messages yet, open the conversation)'}\n"
        f"{turn_instruction}"
    )


def _strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        cleaned = cleaned.removeprefix("json").strip()
    return cleaned


def _response_text(response: object) -> str:
    text = getattr(response, "text", None)
    if not isinstance(text, str):
        text = str(getattr(response, "content", ""))
    return text


def parse_persona_reply(text: str) -> PersonaReply:
    cleaned = _strip_code_fence(text)
    try:
        payload = json.loads(cleaned)
    except ValueError:
        return PersonaReply(
            content=text.strip(),
            emotion=EMOTION_NEUTRAL,
            emotion_reason="persona reply parse fallback",
        )
    if not isinstance(payload, dict):
        return PersonaReply(
            content=text.strip(),
            emotion=EMOTION_NEUTRAL,
            emotion_reason="persona reply parse fallback",
        )
    content = str(payload.get("content", "")).strip()
    if not content:
        raise PersonaModelError("persona reply is empty")
    emotion = str(payload.get("emotion", EMOTION_NEUTRAL)).lower().strip()
    if emotion not in SUPPORTED_EMOTIONS:
        emotion = EMOTION_NEUTRAL
    return PersonaReply(
        content=content,
        emotion=emotion,
        emotion_reason=str(payload.get("emotion_reason", "")).strip(),
    )


class GeminiPersonaModel(PersonaModel):
    provider_name = "google"

    def __init__(self, *, api_key: str, model: str) -> None:
        from langchain_google_genai import ChatGoogleGenerativeAI

        self._model = ChatGoogleGenerativeAI(
            model=model,
            google_api_key=api_key,
            temperature=0.8,
            max_retries=1,
        )

    def generate_reply(
        self,
        *,
        scenario: Scenario,
        persona: ScenarioPersona,
        profile: PersonaProfile | None,
        difficulty: int,
        messages: Sequence[ConversationMessage],
        user_message: str | None,
    ) -> PersonaReply:
        prompt = _persona_prompt(
            scenario=scenario,
            persona=persona,
            profile=profile,
            difficulty=difficulty,
            messages=messages,
            user_message=user_message,
        )
        response = self._model.invoke(prompt)
        return parse_persona_reply(_response_text(response))


def build_persona_model(
    *,
    backend: str,
    model: str,
    api_key: str | None,
) -> PersonaModel:
    if backend == "google" and api_key:
        try:
            return GeminiPersonaModel(api_key=api_key, model=model)
        except Exception:
            LOGGER.warning("gemini persona model unavailable, using deterministic")
            return DeterministicPersonaModel()
    return DeterministicPersonaModel()


# (dimension, categories that raise it, categories that lower it)
KEYWORD_DIMENSIONS = (
    (DIMENSION_CLARITY_LOGIC, (CATEGORY_CONCRETE,), ()),
    (DIMENSION_LISTENING_EMPATHY, (CATEGORY_EMPATHY,), (CATEGORY_DISMISSIVE,)),
    (DIMENSION_APPROPRIATENESS, (CATEGORY_POLITENESS,), (CATEGORY_AGGRESSIVE,)),
    (DIMENSION_PERSUASIVENESS, (CATEGORY_SOLUTION,), ()),
    (
        DIMENSION_STRATEGIC,
        (CATEGORY_QUESTION,),
        (CATEGORY_DISMISSIVE, CATEGORY_AGGRESSIVE),
    ),
)
STRENGTH_THRESHOLD = 4
IMPROVEMENT_THRESHOLD = 2
DEFAULT_DIMENSION_SCORE = 3
FEEDBACK_LIST_LIMIT = 5


class FeedbackModel:
    provider_name = "base"

    def review(
        self,
        *,
        scenario: Scenario | None,
        persona: ScenarioPersona | None,
        persona_name: str,
        messages: Sequence[ConversationMessage],
    ) -> FeedbackDraft:
        raise NotImplementedError


class KeywordFeedbackModel(FeedbackModel):
    """Offline review built from the live keyword score."""

    provider_name = "keyword"

    def review(
        self,
        *,
        scenario: Scenario | None,
        persona: ScenarioPersona | None,
        persona_name: str,
        messages: Sequence[ConversationMessage],
    ) -> FeedbackDraft:
        breakdown = calculate_realtime_score(messages)
        scores: dict[str, int] = {}
        for dimension, positive, negative in KEYWORD_DIMENSIONS:
            if breakdown.user_message_count == 0:
                scores[dimension] = 1
                continue
            positive_hits = sum(breakdown.category_hits.get(name, 0) for name in positive)
            negative_hits = sum(breakdown.category_hits.get(name, 0) for name in negative)
            scores[dimension] = max(1, min(5, 2 + positive_hits - 2 * negative_hits))

        strengths = tuple(
            DIMENSION_NAMES[key]
            for key, value in scores.items()
            if value >= STRENGTH_THRESHOLD
        )
        improvements = tuple(
            DIMENSION_NAMES[key]
            for key, value in scores.items()
            if value <= IMPROVEMENT_THRESHOLD
        )
        return FeedbackDraft(
            overall_score=breakdown.score,
            dimension_scores=scores,
            strengths=strengths,
            improvements=improvements,
            next_steps=tuple(
                f"Practise {name.lower()} in the next attempt." for name in improvements
            ),
            summary=(
                f"Scored {breakdown.score}/100 over {breakdown.user_message_count} "
                f"message(s) with {persona_name}."
            ),
        )


def _feedback_prompt(
    *,
    scenario: Scenario | None,
    persona: ScenarioPersona | None,
    persona_name: str,
    messages: Sequence[ConversationMessage],
) -> str:
    user_lines = [row.message for row in messages if row.sender == SENDER_USER]
    total_chars = sum(len(line) for line in user_lines)
    average_length = round(total_chars / len(user_lines)) if user_lines else 0
    trainee_text = "\n".join(
        f"Trainee line {index}: {line}" for index, line in enumerate(user_lines, start=1)
    )
    transcript = "\n".join(
        f"{'Trainee' if row.sender == SENDER_USER else persona_name}: {row.message}"
        for row in messages
    )
    role = persona.role if persona else "conversation partner"
    goal = (persona.goal if persona else None) or "not specified"
    dimension_keys = ", ".join(
        f'"{key}": 1-5' for key in DIMENSION_NAMES
    )
    return (
        f"Evaluate only the trainee's lines in a role-play with {persona_name} ({role}). "
        "The persona's replies are context, not the subject of the review.\n"
        f"Scenario: {scenario.title if scenario else 'unknown'}\n"
        f"Persona goal: {goal}\n"
        f"Trainee lines (evaluated):\n{trainee_text}\n"
        f"Full transcript (context):\n{transcript}\n"
        f"Statistics: {len(messages)} messages, {len(user_lines)} trainee lines, "
        f"average length {average_length} characters, {total_chars} characters total.\n"
        "Score each dimension from 1 (poor) to 5 (excellent): clarity & logic, "
        "listening & empathy, appropriateness & adaptability, persuasiveness & "
        "impact, strategic communication. Be strict: short or careless answers "
        "score low, and an average length under 20 characters lowers clarity.\n"
        "Return strict JSON only: "
        f'{{"overall_score": 0-100, "scores": {{{dimension_keys}}}, '
        '"strengths": [string], "improvements": [string], '
        '"next_steps": [string], "summary": string}'
    )


def _clamped_int(value: object, *, low: int, high: int) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(low, min(high, int(round(value))))


def _string_items(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    items = [str(item).strip() for item in value if str(item).strip()]
    return tuple(items[:FEEDBACK_LIST_LIMIT])


def parse_feedback_draft(text: str) -> FeedbackDraft:
    try:
        payload = json.loads(_strip_code_fence(text))
    except ValueError as exc:
        raise FeedbackModelError("feedback reply is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise FeedbackModelError("feedback reply must be a JSON object")

    raw_scores = payload.get("scores")
    raw_scores = raw_scores if isinstance(raw_scores, dict) else {}
    scores = {
        key: _clamped_int(raw_scores.get(key), low=1, high=5) or DEFAULT_DIMENSION_SCORE
        for key in DIMENSION_NAMES
    }
    overall = _clamped_int(payload.get("overall_score"), low=0, high=100)
    if overall is None:
        overall = round(sum(scores.values()) / len(scores) * 20)
    summary = payload.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = "The conversation was reviewed without a written summary."
    return FeedbackDraft(
        overall_score=overall,
        dimension_scores=scores,
        strengths=_string_items(payload.get("strengths")),
        improvements=_string_items(payload.get("improvements")),
        next_steps=_string_items(payload.get("next_steps")),
        summary=summary.strip(),
    )


class GeminiFeedbackModel(FeedbackModel):
    provider_name = "google"

    def __init__(self, *, api_key: str, model: str) -> None:
        from langchain_google_genai import ChatGoogleGenerativeAI

        self._model = ChatGoogleGenerativeAI(
            model=model,
            google_api_key=api_key,
            temperature=0.2,
            max_retries=1,
        )

    def review(
        self,
        *,
        scenario: Scenario | None,
        persona: ScenarioPersona | None,
        persona_name: str,
        messages: Sequence[ConversationMessage],
    ) -> FeedbackDraft:
        prompt = _feedback_prompt(
            scenario=scenario,
            persona=persona,
            persona_name=persona_name,
            messages=messages,
        )
        response = self._model.invoke(prompt)
        return parse_feedback_draft(_response_text(response))


def build_feedback_model(
    *,
    backend: str,
    model: str,
    api_key: str | None,
) -> FeedbackModel:
    if backend == "google" and api_key:
        try:
            return GeminiFeedbackModel(api_key=api_key, model=model)
        except Exception:
            LOGGER.warning("gemini feedback model unavailable, using keyword review")
            return KeywordFeedbackModel()
    return KeywordFeedbackModel()
