"""Live heuristic scoring of a role-play transcript.

The score is a fixed-weight keyword tally over the trainee's own lines. It is
meant as an at-a-glance indicator while the conversation is running; the
post-conversation report in ``rolecoach.app.feedback`` builds on the same
tally.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from rolecoach.app.conversations.contracts import SENDER_USER
from rolecoach.app.scoring.contracts import (
    KeywordCategory,
    MessageScore,
    ScoreBreakdown,
)

BASE_SCORE = 50
MIN_SCORE = 0
MAX_SCORE = 100

SHORT_MESSAGE_CHARS = 10
SHORT_MESSAGE_PENALTY = -5
LONG_MESSAGE_CHARS = 40
LONG_MESSAGE_BONUS = 3
QUESTION_BONUS = 2
CONCRETE_DETAIL_BONUS = 2

CATEGORY_POLITENESS = "politeness"
CATEGORY_EMPATHY = "empathy"
CATEGORY_SOLUTION = "solution"
CATEGORY_DISMISSIVE = "dismissive"
CATEGORY_AGGRESSIVE = "aggressive"
CATEGORY_CONCRETE = "concrete_detail"
CATEGORY_QUESTION = "question"

KEYWORD_CATEGORIES: tuple[KeywordCategory, ...] = (
    KeywordCategory(
        name=CATEGORY_POLITENESS,
        weight=3,
        keywords=(
            "감사",
            "고맙",
            "죄송",
            "부탁",
            "실례",
            "please",
            "thank",
            "sorry",
            "appreciate",
        ),
    ),
    KeywordCategory(
        name=CATEGORY_EMPATHY,
        weight=4,
        keywords=(
            "이해",
            "공감",
            "힘드",
            "걱정",
            "마음",
            "understand",
            "i hear you",
            "feel",
            "concern",
        ),
    ),
    KeywordCategory(
        name=CATEGORY_SOLUTION,
        weight=5,
        keywords=(
            "해결",
            "방안",
            "제안",
            "계획",
            "대안",
            "일정",
            "propose",
            "suggest",
            "plan",
            "solution",
            "alternative",
        ),
    ),
    KeywordCategory(
        name=CATEGORY_DISMISSIVE,
        weight=-5,
        keywords=(
            "몰라",
            "상관없",
            "어쩔 수 없",
            "whatever",
            "don't care",
            "not my problem",
            "no idea",
        ),
    ),
    KeywordCategory(
        name=CATEGORY_AGGRESSIVE,
        weight=-8,
        keywords=(
            "짜증",
            "말도 안",
            "바보",
            "당신 탓",
            "책임져",
            "stupid",
            "ridiculous",
            "your fault",
            "shut up",
        ),
    ),
)

_DIGIT_PATTERN = re.compile(r"\d")


def _fields(message: object) -> tuple[str, str]:
    if isinstance(message, Mapping):
        sender = message.get("sender")
        text = message.get("message")
    else:
        sender = getattr(message, "sender", None)
        text = getattr(message, "message", None)
    return (
        sender if isinstance(sender, str) else "",
        text if isinstance(text, str) else "",
    )


def _clamp(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def score_message(text: str) -> MessageScore:
    stripped = text.strip()
    normalized = stripped.lower()
    delta = 0
    categories: list[str] = []

    for category in KEYWORD_CATEGORIES:
        if any(keyword in normalized for keyword in category.keywords):
            delta += category.weight
            categories.append(category.name)

    if _DIGIT_PATTERN.search(stripped):
        delta += CONCRETE_DETAIL_BONUS
        categories.append(CATEGORY_CONCRETE)
    if "?" in stripped:
        delta += QUESTION_BONUS
        categories.append(CATEGORY_QUESTION)

    if len(stripped) < SHORT_MESSAGE_CHARS:
        delta += SHORT_MESSAGE_PENALTY
    elif len(stripped) >= LONG_MESSAGE_CHARS:
        delta += LONG_MESSAGE_BONUS

    return MessageScore(message=stripped, delta=delta, categories=tuple(categories))


def calculate_realtime_score(messages: Iterable[object]) -> ScoreBreakdown:
    """Score the trainee's lines of a transcript on a 0-100 scale.

    Accepts ``ConversationMessage`` objects or API-shaped mappings. AI lines and
    blank user lines are ignored; each keyword category counts at most once
    per message.
    """
    scored: list[MessageScore] = []
    for message in messages:
        sender, text = _fields(message)
        if sender != SENDER_USER or not text.strip():
            continue
        scored.append(score_message(text))

    category_hits: dict[str, int] = {}
    for row in scored:
        for name in row.categories:
            category_hits[name] = category_hits.get(name, 0) + 1

    total = BASE_SCORE + sum(row.delta for row in scored)
    return ScoreBreakdown(
        score=_clamp(total),
        base_score=BASE_SCORE,
        user_message_count=len(scored),
        category_hits=category_hits,
        messages=tuple(scored),
    )


def estimate_turn_score(turn_count: int) -> float:
    return min(10.0, max(0.0, 8.5 - turn_count * 0.2))
