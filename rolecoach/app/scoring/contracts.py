from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class KeywordCategory:
    name: str
    weight: int
    keywords: tuple[str, ...]


@dataclass(frozen=True)
class MessageScore:
    message: str
    delta: int
    categories: tuple[str, ...]


@dataclass(frozen=True)
class ScoreBreakdown:
    score: int
    base_score: int
    user_message_count: int
    category_hits: dict[str, int]
    messages: tuple[MessageScore, ...]
