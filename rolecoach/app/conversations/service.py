from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

from rolecoach.app.catalog.service import (
    find_scenario_persona,
    get_persona_profile,
    get_scenario,
)
from rolecoach.app.conversations.contracts import (
    MODE_REALTIME_VOICE,
    RUN_STATUS_ACTIVE,
    RUN_STATUS_COMPLETED,
    SENDER_AI,
    SENDER_USER,
    SUPPORTED_MODES,
    ConversationMessage,
    ConversationView,
    MessageExchange,
    PersonaRun,
    ScenarioRun,
)
from rolecoach.app.llm.providers import PersonaModel
from rolecoach.app.observability.service import emit_event
from rolecoach.app.runtime.store import RuntimeStore, conversation_lock

LOGGER = logging.getLogger(__name__)


class ConversationError(Exception):
    status_code = 400


class ConversationNotFound(ConversationError):
    status_code = 404


class ConversationAccessDenied(ConversationError):
    status_code = 403


class ConversationClosed(ConversationError):
    status_code = 400


class InvalidConversationRequest(ConversationError):
    status_code = 400


class PersonaReplyFailed(ConversationError):
    status_code = 502


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _verify_persona_run_ownership(
    *, store: RuntimeStore, conversation_id: str, user_id: str
) -> tuple[PersonaRun, ScenarioRun]:
    persona_run = store.persona_runs.get(conversation_id)
    if persona_run is None:
        raise ConversationNotFound("Conversation not found")
    scenario_run = store.scenario_runs.get(persona_run.scenario_run_id)
    if scenario_run is None or scenario_run.user_id != user_id:
        raise ConversationAccessDenied("Unauthorized access")
    return persona_run, scenario_run


def _view(store: RuntimeStore, persona_run: PersonaRun) -> ConversationView:
    scenario_run = store.scenario_runs[persona_run.scenario_run_id]
    messages = store.messages_by_persona_run.get(persona_run.run_id, [])
    return ConversationView(
        persona_run=persona_run,
        scenario_run=scenario_run,
        messages=tuple(messages),
    )


def _find_active_scenario_run(
    store: RuntimeStore, user_id: str, scenario_id: str
) -> ScenarioRun | None:
    candidates = [
        run
        for run in store.scenario_runs.values()
        if run.user_id == user_id
        and run.scenario_id == scenario_id
        and run.status == RUN_STATUS_ACTIVE
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda run: run.started_at)


def _append_message(
    store: RuntimeStore,
    persona_run_id: str,
    *,
    sender: str,
    message: str,
    emotion: str | None = None,
    emotion_reason: str | None = None,
) -> ConversationMessage:
    row = ConversationMessage(
        sender=sender,
        message=message,
        timestamp=_utc_now(),
        emotion=emotion,
        emotion_reason=emotion_reason,
    )
    store.messages_by_persona_run.setdefault(persona_run_id, []).append(row)
    return row


def _remove_message(
    store: RuntimeStore, persona_run_id: str, row: ConversationMessage
) -> None:
    rows = store.messages_by_persona_run.get(persona_run_id)
    if rows is None:
        return
    store.messages_by_persona_run[persona_run_id] = [
        existing for existing in rows if existing is not row
    ]


def create_conversation(
    *,
    store: RuntimeStore,
    persona_model: PersonaModel,
    user_id: str,
    scenario_id: str,
    persona_id: str | None,
    mode: str,
    difficulty: int | None,
    force_new_run: bool = False,
    persona_snapshot: dict[str, object] | None = None,
) -> ConversationView:
    if mode not in SUPPORTED_MODES:
        raise InvalidConversationRequest(f"Unsupported mode: {mode}")
    try:
        scenario = get_scenario(store=store, scenario_id=scenario_id)
        if persona_id is None and scenario.personas:
            persona = scenario.personas[0]
        else:
            persona = find_scenario_persona(scenario, persona_id or scenario_id)
    except LookupError as exc:
        raise InvalidConversationRequest(str(exc)) from exc
    resolved_difficulty = difficulty or scenario.difficulty

    with store.lock:
        scenario_run = (
            None
            if force_new_run
            else _find_active_scenario_run(store, user_id, scenario_id)
        )
        if scenario_run is None:
            attempt_number = (
                sum(
                    1
                    for run in store.scenario_runs.values()
                    if run.user_id == user_id and run.scenario_id == scenario_id
                )
                + 1
            )
            scenario_run = ScenarioRun(
                run_id=f"srun-{uuid4().hex[:12]}",
                user_id=user_id,
                scenario_id=scenario_id,
                scenario_name=scenario.title,
                attempt_number=attempt_number,
                mode=mode,
                difficulty=resolved_difficulty,
                status=RUN_STATUS_ACTIVE,
                started_at=_utc_now(),
            )
            store.scenario_runs[scenario_run.run_id] = scenario_run
            emit_event(
                "scenario_run_created",
                scenario_run_id=scenario_run.run_id,
                attempt_number=attempt_number,
            )

        phase = (
            sum(
                1
                for run in store.persona_runs.values()
                if run.scenario_run_id == scenario_run.run_id
            )
            + 1
        )
        persona_run = PersonaRun(
            run_id=f"conv-{uuid4().hex[:12]}",
            scenario_run_id=scenario_run.run_id,
            persona_id=persona.persona_id,
            persona_name=persona.name,
            phase=phase,
            mode=mode,
            difficulty=resolved_difficulty,
            status=RUN_STATUS_ACTIVE,
            turn_count=0,
            started_at=_utc_now(),
            persona_snapshot=dict(persona_snapshot or {}),
        )
        store.persona_runs[persona_run.run_id] = persona_run
        store.messages_by_persona_run[persona_run.run_id] = []

    if mode == MODE_REALTIME_VOICE:
        return _view(store, persona_run)

    with conversation_lock(store, persona_run.run_id):
        try:
            reply = persona_model.generate_reply(
                scenario=scenario,
                persona=persona,
                profile=get_persona_profile(store=store, persona=persona),
                difficulty=resolved_difficulty,
                messages=(),
                user_message=None,
            )
        except Exception:
            LOGGER.exception(
                "opening message generation failed for %s", persona_run.run_id
            )
            return _view(store, persona_run)

        _append_message(
            store,
            persona_run.run_id,
            sender=SENDER_AI,
            message=reply.content,
            emotion=reply.emotion,
            emotion_reason=reply.emotion_reason,
        )
        return _view(store, persona_run)


def get_conversation(
    *, store: RuntimeStore, conversation_id: str, user_id: str
) -> ConversationView:
    persona_run, _ = _verify_persona_run_ownership(
        store=store, conversation_id=conversation_id, user_id=user_id
    )
    return _view(store, persona_run)


def list_conversations(*, store: RuntimeStore, user_id: str) -> list[ConversationView]:
    with store.lock:
        owned_runs = {
            run.run_id for run in store.scenario_runs.values() if run.user_id == user_id
        }
        views = [
            _view(store, run)
            for run in store.persona_runs.values()
            if run.scenario_run_id in owned_runs
        ]
    return sorted(views, key=lambda view: view.persona_run.started_at, reverse=True)


def delete_conversation(
    *, store: RuntimeStore, conversation_id: str, user_id: str
) -> None:
    with conversation_lock(store, conversation_id), store.lock:
        persona_run, scenario_run = _verify_persona_run_ownership(
            store=store, conversation_id=conversation_id, user_id=user_id
        )
        store.persona_runs.pop(persona_run.run_id, None)
        store.messages_by_persona_run.pop(persona_run.run_id, None)
        store.feedback_by_persona_run.pop(persona_run.run_id, None)
        remaining = [
            run
            for run in store.persona_runs.values()
            if run.scenario_run_id == scenario_run.run_id
        ]
        if not remaining:
            store.scenario_runs.pop(scenario_run.run_id, None)
        store.conversation_locks.pop(persona_run.run_id, None)


def check_and_complete_scenario(*, store: RuntimeStore, scenario_run_id: str) -> bool:
    with store.lock:
        return _complete_scenario_if_done(store, scenario_run_id)


def _complete_scenario_if_done(store: RuntimeStore, scenario_run_id: str) -> bool:
    scenario_run = store.scenario_runs.get(scenario_run_id)
    if scenario_run is None or scenario_run.status == RUN_STATUS_COMPLETED:
        return False
    scenario = store.scenarios.get(scenario_run.scenario_id)
    if scenario is None or not scenario.personas:
        return False

    completed_personas = {
        run.persona_id
        for run in store.persona_runs.values()
        if run.scenario_run_id == scenario_run_id
        and run.status == RUN_STATUS_COMPLETED
    }
    required = {persona.persona_id for persona in scenario.personas}
    if not required.issubset(completed_personas):
        return False

    store.scenario_runs[scenario_run_id] = replace(
        scenario_run, status=RUN_STATUS_COMPLETED, completed_at=_utc_now()
    )
    emit_event(
        "scenario_run_completed",
        scenario_run_id=scenario_run_id,
        persona_count=len(required),
    )
    return True


def send_message(
    *,
    store: RuntimeStore,
    persona_model: PersonaModel,
    conversation_id: str,
    user_id: str,
    message: object,
    max_turns: int,
) -> MessageExchange:
    """Run one exchange: store the user line, ask the persona, count the turn.

    Exchanges on the same conversation are serialised, so ``turn_count`` grows
    by exactly one per exchange and never passes ``max_turns``.
    """
    with conversation_lock(store, conversation_id):
        persona_run, scenario_run = _verify_persona_run_ownership(
            store=store, conversation_id=conversation_id, user_id=user_id
        )
        if not isinstance(message, str):
            raise InvalidConversationRequest("Message must be a string")
        if persona_run.status == RUN_STATUS_COMPLETED:
            raise ConversationClosed("Conversation already completed")

        try:
            scenario = get_scenario(store=store, scenario_id=scenario_run.scenario_id)
            persona = find_scenario_persona(scenario, persona_run.persona_id)
        except LookupError as exc:
            raise ConversationError(str(exc)) from exc

        is_skip_turn = message.strip() == ""
        history = list(store.messages_by_persona_run.get(persona_run.run_id, []))
        user_row: ConversationMessage | None = None
        if not is_skip_turn:
            user_row = _append_message(
                store, persona_run.run_id, sender=SENDER_USER, message=message
            )
            history.append(user_row)

        try:
            reply = persona_model.generate_reply(
                scenario=scenario,
                persona=persona,
                profile=get_persona_profile(store=store, persona=persona),
                difficulty=persona_run.difficulty or scenario_run.difficulty,
                messages=history,
                user_message=None if is_skip_turn else message,
            )
        except Exception as exc:
            if user_row is not None:
                _remove_message(store, persona_run.run_id, user_row)
            LOGGER.exception("persona reply failed for %s", persona_run.run_id)
            raise PersonaReplyFailed("Failed to process message") from exc

        persona_run = store.persona_runs.get(persona_run.run_id)
        if persona_run is None:
            raise ConversationNotFound("Conversation not found")
        _append_message(
            store,
            persona_run.run_id,
            sender=SENDER_AI,
            message=reply.content,
            emotion=reply.emotion,
            emotion_reason=reply.emotion_reason,
        )

        turn_count = persona_run.turn_count + 1
        is_completed = turn_count >= max_turns
        updated_run = replace(
            persona_run,
            turn_count=turn_count,
            status=RUN_STATUS_COMPLETED if is_completed else RUN_STATUS_ACTIVE,
            completed_at=_utc_now() if is_completed else None,
        )
        store.persona_runs[persona_run.run_id] = updated_run
        if is_completed:
            check_and_complete_scenario(store=store, scenario_run_id=scenario_run.run_id)
        view = _view(store, updated_run)

    return MessageExchange(
        conversation=view,
        ai_response=reply.content,
        emotion=reply.emotion,
        emotion_reason=reply.emotion_reason,
        is_completed=is_completed,
    )


def save_realtime_messages(
    *,
    store: RuntimeStore,
    conversation_id: str,
    user_id: str,
    messages: object,
) -> tuple[ConversationView, int, int]:
    """Store a voice transcript in bulk and close the conversation.

    Returns the updated view, the number of saved messages and the number of
    user turns in the batch.
    """
    if not isinstance(messages, Sequence) or isinstance(messages, str):
        raise InvalidConversationRequest("Messages must be an array")
    with conversation_lock(store, conversation_id):
        persona_run, scenario_run = _verify_persona_run_ownership(
            store=store, conversation_id=conversation_id, user_id=user_id
        )

        rows: list[tuple[str, str, str | None, str | None]] = []
        for item in messages:
            if not isinstance(item, dict):
                raise InvalidConversationRequest("Each message must be an object")
            sender = item.get("sender")
            text = item.get("message")
            if sender not in {SENDER_USER, SENDER_AI} or not isinstance(text, str):
                raise InvalidConversationRequest(
                    "Each message needs a sender of 'user' or 'ai' and a message string"
                )
            emotion = item.get("emotion")
            emotion_reason = item.get("emotion_reason", item.get("emotionReason"))
            rows.append(
                (
                    sender,
                    text,
                    emotion if isinstance(emotion, str) and emotion else None,
                    emotion_reason
                    if isinstance(emotion_reason, str) and emotion_reason
                    else None,
                )
            )

        for sender, text, emotion, emotion_reason in rows:
            _append_message(
                store,
                persona_run.run_id,
                sender=sender,
                message=text,
                emotion=emotion,
                emotion_reason=emotion_reason,
            )

        user_turns = sum(1 for sender, *_ in rows if sender == SENDER_USER)
        updated_run = replace(
            persona_run,
            turn_count=persona_run.turn_count + user_turns,
            status=RUN_STATUS_COMPLETED,
            completed_at=_utc_now(),
        )
        store.persona_runs[persona_run.run_id] = updated_run
        check_and_complete_scenario(store=store, scenario_run_id=scenario_run.run_id)
        emit_event(
            "realtime_transcript_saved",
            conversation_id=persona_run.run_id,
            messages_saved=len(rows),
            user_turns=user_turns,
        )
        return _view(store, updated_run), len(rows), user_turns
