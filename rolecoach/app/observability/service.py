from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from rolecoach.app.observability.contracts import MessageTrace

LOGGER = logging.getLogger(__name__)

MAX_TRACE_LOG = 500


def create_message_trace(
    *,
    conversation_id: str,
    mode: str,
    provider: str,
    skipped_turn: bool,
    started_at: float,
) -> MessageTrace:
    elapsed_ms = int((time.perf_counter() - started_at) * 1000)
    return MessageTrace(
        trace_id=f"trace-{uuid4().hex[:10]}",
        conversation_id=conversation_id,
        mode=mode,
        provider=provider,
        skipped_turn=skipped_turn,
        latency_ms=max(elapsed_ms, 0),
    )


def record_trace(trace_log: list[MessageTrace], trace: MessageTrace) -> None:
    trace_log.append(trace)
    if len(trace_log) > MAX_TRACE_LOG:
        del trace_log[: len(trace_log) - MAX_TRACE_LOG]
    emit_event(
        "message_exchange",
        trace_id=trace.trace_id,
        conversation_id=trace.conversation_id,
        mode=trace.mode,
        provider=trace.provider,
        skipped_turn=trace.skipped_turn,
        latency_ms=trace.latency_ms,
    )


def emit_event(
    event_name: str,
    logger: logging.Logger | None = None,
    **payload: object,
) -> None:
    active_logger = logger or LOGGER
    active_logger.info("%s %s", event_name, json.dumps(payload, sort_keys=True))
