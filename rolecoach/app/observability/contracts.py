from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class MessageTrace:
    trace_id: str
    conversation_id: str
    mode: str
    provider: str
    skipped_turn: bool
    latency_ms: int
