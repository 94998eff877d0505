from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rolecoach.app.auth.access import (
    LoginFailedError,
    LoginRateLimitedError,
    RegistrationError,
    authenticate_user,
    register_user,
)
from rolecoach.app.auth.config import TOKEN_COOKIE_NAME, load_auth_settings
from rolecoach.app.auth.contracts import ADMIN_ROLES, AuthContext, UserAccount
from rolecoach.app.auth.verify import (
    TOKEN_TYPE_REALTIME,
    AuthConfigurationError,
    AuthVerificationError,
    issue_access_token,
    issue_token,
    verify_request_token,
)
from rolecoach.app.catalog.contracts import Scenario, ScenarioPersona
from rolecoach.app.catalog.payloads import (
    CatalogPayloadError,
    persona_profile_to_payload,
    scenario_to_payload,
)
from rolecoach.app.catalog.service import (
    CatalogConflictError,
    CatalogNotFoundError,
    create_persona_profile,
    create_scenario,
    delete_persona_profile,
    delete_scenario,
    find_persona_anywhere,
    find_scenario_persona,
    get_persona_profile_by_id,
    get_scenario,
    list_persona_profiles,
    list_scenarios,
    persona_image_for,
    update_persona_profile,
    update_scenario,
)
from rolecoach.app.conversations.contracts import (
    SENDER_AI,
    ConversationMessage,
    ConversationView,
)
from rolecoach.app.conversations.service import (
    ConversationError,
    create_conversation,
    delete_conversation,
    get_conversation,
    list_conversations,
    save_realtime_messages,
    send_message,
)
from rolecoach.app.feedback.contracts import FeedbackReport
from rolecoach.app.feedback.service import build_feedback_report
from rolecoach.app.llm.providers import build_feedback_model, build_persona_model
from rolecoach.app.observability.service import (
    create_message_trace,
    emit_event,
    record_trace,
)
from rolecoach.app.runtime.store import (
    hydrate_runtime_state,
    persist_runtime_state,
    runtime_store,
)
from rolecoach.app.scoring.service import calculate_realtime_score, estimate_turn_score
from rolecoach.app.tts.service import (
    InvalidSpeechRequest,
    SpeechSynthesisError,
    build_speech_providers,
    generate_speech,
)
from rolecoach.core.config import load_app_config


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False


class RealtimeTokenRequest(BaseModel):
    conversation_id: str | None = None


class CreateConversationRequest(BaseModel):
    scenario_id: str = Field(min_length=1)
    persona_id: str | None = None
    mode: str = "text"
    difficulty: int | None = Field(default=None, ge=1, le=4)
    force_new_run: bool = False
    persona_snapshot: dict[str, Any] | None = None


class SendMessageRequest(BaseModel):
    message: Any = None


class RealtimeMessagesRequest(BaseModel):
    messages: Any = None


class SpeechRequest(BaseModel):
    text: str | None = None
    scenario_id: str | None = None
    emotion: str | None = None


def _message_payload(message: ConversationMessage) -> dict[str, object]:
    return {
        "sender": message.sender,
        "message": message.message,
        "timestamp": message.timestamp,
        "emotion": message.emotion,
        "emotion_reason": message.emotion_reason,
    }


def _catalog_entries(
    view: ConversationView,
) -> tuple[Scenario | None, ScenarioPersona | None]:
    scenario = runtime_store.scenarios.get(view.scenario_run.scenario_id)
    if scenario is None:
        return None, None
    try:
        return scenario, find_scenario_persona(scenario, view.persona_run.persona_id)
    except LookupError:
        return scenario, None


def _latest_ai_emotion(view: ConversationView) -> str | None:
    for message in reversed(view.messages):
        if message.sender == SENDER_AI:
            return message.emotion
    return None


def _conversation_payload(view: ConversationView) -> dict[str, object]:
    persona_run = view.persona_run
    _, persona = _catalog_entries(view)
    return {
        "id": persona_run.run_id,
        "scenario_run_id": persona_run.scenario_run_id,
        "scenario_id": view.scenario_run.scenario_id,
        "scenario_name": view.scenario_run.scenario_name,
        "attempt_number": view.scenario_run.attempt_number,
        "scenario_status": view.scenario_run.status,
        "persona_id": persona_run.persona_id,
        "persona_name": persona_run.persona_name,
        "persona_snapshot": dict(persona_run.persona_snapshot),
        "user_id": view.scenario_run.user_id,
        "phase": persona_run.phase,
        "mode": persona_run.mode,
        "difficulty": persona_run.difficulty,
        "status": persona_run.status,
        "turn_count": persona_run.turn_count,
        "created_at": persona_run.started_at,
        "completed_at": persona_run.completed_at,
        "persona_images": dict(persona.images) if persona else {},
        "persona_image": (
            persona_image_for(persona, _latest_ai_emotion(view)) if persona else None
        ),
        "messages": [_message_payload(message) for message in view.messages],
    }


def _user_payload(account: UserAccount) -> dict[str, str]:
    return {
        "id": account.user_id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "created_at": account.created_at,
    }


def _feedback_payload(report: FeedbackReport) -> dict[str, object]:
    return {
        "conversation_id": report.conversation_id,
        "overall_score": report.overall_score,
        "scores": [
            {
                "category": row.category,
                "name": row.name,
                "score": row.score,
                "feedback": row.feedback,
            }
            for row in report.scores
        ],
        "strengths": list(report.strengths),
        "improvements": list(report.improvements),
        "summary": report.summary,
        "conversation_duration_minutes": report.conversation_duration_minutes,
        "average_response_time_seconds": report.average_response_time_seconds,
        "time_performance": report.time_performance,
        "time_performance_feedback": report.time_performance_feedback,
        "next_steps": list(report.next_steps),
        "provider": report.provider,
        "created_at": report.created_at,
    }


def create_app() -> FastAPI:
    config = load_app_config()
    persona_model = build_persona_model(
        backend=config.ai_backend,
        model=config.ai_model,
        api_key=config.gemini_api_key,
    )
    feedback_model = build_feedback_model(
        backend=config.ai_backend,
        model=config.ai_model,
        api_key=config.gemini_api_key,
    )
    speech_providers = build_speech_providers(
        elevenlabs_api_key=config.elevenlabs_api_key,
        elevenlabs_model=config.elevenlabs_model,
        custom_tts_url=config.custom_tts_url,
        custom_tts_api_key=config.custom_tts_api_key,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if config.persist_runtime_state:
            await asyncio.to_thread(hydrate_runtime_state, runtime_store)
        yield
        if config.persist_runtime_state:
            await asyncio.to_thread(persist_runtime_state, runtime_store)

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)

    async def _persist() -> None:
        if config.persist_runtime_state:
            await asyncio.to_thread(persist_runtime_state, runtime_store)

    def require_auth_context(
        authorization: str | None = Header(default=None, alias="Authorization"),
        cookie_token: str | None = Cookie(default=None, alias=TOKEN_COOKIE_NAME),
    ) -> AuthContext:
        try:
            return verify_request_token(authorization, cookie_token, load_auth_settings())
        except AuthConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except AuthVerificationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc

    def require_admin(
        context: AuthContext = Depends(require_auth_context),
    ) -> AuthContext:
        account = runtime_store.users_by_id.get(context.user_id)
        if account is None or account.role not in ADMIN_ROLES:
            raise HTTPException(status_code=403, detail="Admin access required")
        return context

    def _issue_session(response: Response, account: UserAccount, remember_me: bool) -> str:
        settings = load_auth_settings()
        try:
            token = issue_access_token(
                user_id=account.user_id,
                role=account.role,
                settings=settings,
                remember_me=remember_me,
            )
        except AuthConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        days = settings.remember_me_ttl_days if remember_me else settings.token_ttl_days
        response.set_cookie(
            key=TOKEN_COOKIE_NAME,
            value=token,
            max_age=days * 24 * 60 * 60,
            httponly=True,
            samesite="lax",
            secure=config.environment == "production",
        )
        return token

    def _owned_conversation(conversation_id: str, context: AuthContext) -> ConversationView:
        try:
            return get_conversation(
                store=runtime_store,
                conversation_id=conversation_id,
                user_id=context.user_id,
            )
        except ConversationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    @app.get("/")
    async def root() -> JSONResponse:
        return JSONResponse(
            content={
                "name": config.app_name,
                "version": config.app_version,
                "environment": config.environment,
                "docs": "/docs",
            }
        )

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/ready")
    async def ready() -> dict[str, object]:
        return {
            "status": "ready",
            "persona_backend": persona_model.provider_name,
            "feedback_backend": feedback_model.provider_name,
            "speech_providers": [provider.provider_name for provider in speech_providers],
            "max_turns": config.max_turns,
            "scenario_count": len(runtime_store.scenarios),
        }

    @app.post("/api/auth/register", status_code=201)
    async def register(payload: RegisterRequest, response: Response) -> dict[str, object]:
        try:
            account = await asyncio.to_thread(
                register_user,
                store=runtime_store,
                email=payload.email,
                password=payload.password,
                name=payload.name,
            )
        except RegistrationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        token = _issue_session(response, account, remember_me=False)
        await _persist()
        emit_event("user_registered", user_id=account.user_id)
        return {"user": _user_payload(account), "token": token}

    @app.post("/api/auth/login")
    async def login(
        payload: LoginRequest, request: Request, response: Response
    ) -> dict[str, object]:
        try:
            account = await asyncio.to_thread(
                authenticate_user,
                store=runtime_store,
                email=payload.email,
                password=payload.password,
                client_host=request.client.host if request.client else None,
            )
        except LoginRateLimitedError as exc:
            raise HTTPException(
                status_code=429,
                detail=str(exc),
                headers={"Retry-After": str(exc.retry_after_seconds)},
            ) from exc
        except LoginFailedError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        token = _issue_session(response, account, remember_me=payload.remember_me)
        return {"user": _user_payload(account), "token": token}

    @app.post("/api/auth/logout")
    async def logout(response: Response) -> dict[str, bool]:
        response.delete_cookie(TOKEN_COOKIE_NAME)
        return {"ok": True}

    @app.get("/api/auth/user")
    async def current_user(
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, str]:
        account = runtime_store.users_by_id.get(context.user_id)
        if account is None:
            raise HTTPException(status_code=404, detail="User not found")
        return _user_payload(account)

    @app.post("/api/realtime/token")
    async def realtime_token(
        payload: RealtimeTokenRequest | None = None,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        if payload is not None and payload.conversation_id:
            _owned_conversation(payload.conversation_id, context)
        settings = load_auth_settings()
        token = issue_token(
            user_id=context.user_id,
            role=context.role,
            settings=settings,
            ttl_seconds=settings.realtime_token_ttl_seconds,
            token_type=TOKEN_TYPE_REALTIME,
        )
        return {
            "token": token,
            "token_type": TOKEN_TYPE_REALTIME,
            "expires_in": settings.realtime_token_ttl_seconds,
        }

    @app.get("/api/scenarios")
    async def scenarios() -> dict[str, list[dict[str, object]]]:
        return {
            "scenarios": [
                scenario_to_payload(row) for row in list_scenarios(store=runtime_store)
            ]
        }

    @app.get("/api/scenarios/{scenario_id}")
    async def scenario_detail(scenario_id: str) -> dict[str, object]:
        try:
            return scenario_to_payload(
                get_scenario(store=runtime_store, scenario_id=scenario_id)
            )
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/admin/scenarios")
    async def admin_list_scenarios(
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, list[dict[str, object]]]:
        return {
            "scenarios": [
                scenario_to_payload(row) for row in list_scenarios(store=runtime_store)
            ]
        }

    @app.post("/api/admin/scenarios", status_code=201)
    async def admin_create_scenario(
        payload: dict[str, Any],
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            scenario = create_scenario(store=runtime_store, payload=payload)
        except CatalogConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CatalogPayloadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await _persist()
        return scenario_to_payload(scenario)

    @app.put("/api/admin/scenarios/{scenario_id}")
    async def admin_update_scenario(
        scenario_id: str,
        payload: dict[str, Any],
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            scenario = update_scenario(
                store=runtime_store, scenario_id=scenario_id, payload=payload
            )
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except CatalogPayloadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await _persist()
        return scenario_to_payload(scenario)

    @app.delete("/api/admin/scenarios/{scenario_id}")
    async def admin_delete_scenario(
        scenario_id: str,
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            delete_scenario(store=runtime_store, scenario_id=scenario_id)
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        await _persist()
        return {"ok": True, "id": scenario_id}

    @app.get("/api/admin/personas")
    async def admin_list_personas(
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, list[dict[str, object]]]:
        return {
            "personas": [
                persona_profile_to_payload(row)
                for row in list_persona_profiles(store=runtime_store)
            ]
        }

    @app.get("/api/admin/personas/{persona_id}")
    async def admin_get_persona(
        persona_id: str,
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            return persona_profile_to_payload(
                get_persona_profile_by_id(store=runtime_store, persona_id=persona_id)
            )
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/api/admin/personas", status_code=201)
    async def admin_create_persona(
        payload: dict[str, Any],
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            profile = create_persona_profile(store=runtime_store, payload=payload)
        except CatalogConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CatalogPayloadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await _persist()
        return persona_profile_to_payload(profile)

    @app.put("/api/admin/personas/{persona_id}")
    async def admin_update_persona(
        persona_id: str,
        payload: dict[str, Any],
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            profile = update_persona_profile(
                store=runtime_store, persona_id=persona_id, payload=payload
            )
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except CatalogPayloadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await _persist()
        return persona_profile_to_payload(profile)

    @app.delete("/api/admin/personas/{persona_id}")
    async def admin_delete_persona(
        persona_id: str,
        _context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        try:
            delete_persona_profile(store=runtime_store, persona_id=persona_id)
        except CatalogNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        await _persist()
        return {"ok": True, "id": persona_id}

    @app.post("/api/conversations")
    async def start_conversation(
        payload: CreateConversationRequest,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        try:
            view = await asyncio.to_thread(
                create_conversation,
                store=runtime_store,
                persona_model=persona_model,
                user_id=context.user_id,
                scenario_id=payload.scenario_id,
                persona_id=payload.persona_id,
                mode=payload.mode,
                difficulty=payload.difficulty,
                force_new_run=payload.force_new_run,
                persona_snapshot=payload.persona_snapshot,
            )
        except ConversationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        await _persist()
        return _conversation_payload(view)

    @app.get("/api/conversations")
    async def conversations(
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, list[dict[str, object]]]:
        return {
            "conversations": [
                _conversation_payload(view)
                for view in list_conversations(
                    store=runtime_store, user_id=context.user_id
                )
            ]
        }

    @app.get("/api/conversations/{conversation_id}")
    async def conversation_detail(
        conversation_id: str,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        return _conversation_payload(_owned_conversation(conversation_id, context))

    @app.delete("/api/conversations/{conversation_id}")
    async def remove_conversation(
        conversation_id: str,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        try:
            await asyncio.to_thread(
                delete_conversation,
                store=runtime_store,
                conversation_id=conversation_id,
                user_id=context.user_id,
            )
        except ConversationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        await _persist()
        return {"ok": True, "id": conversation_id}

    @app.post("/api/conversations/{conversation_id}/messages")
    async def post_message(
        conversation_id: str,
        payload: SendMessageRequest,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        started = time.perf_counter()
        try:
            exchange = await asyncio.to_thread(
                send_message,
                store=runtime_store,
                persona_model=persona_model,
                conversation_id=conversation_id,
                user_id=context.user_id,
                message=payload.message,
                max_turns=config.max_turns,
            )
        except ConversationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

        record_trace(
            runtime_store.message_trace_log,
            create_message_trace(
                conversation_id=conversation_id,
                mode=exchange.conversation.persona_run.mode,
                provider=persona_model.provider_name,
                skipped_turn=str(payload.message).strip() == "",
                started_at=started,
            ),
        )
        await _persist()
        return {
            "conversation": _conversation_payload(exchange.conversation),
            "ai_response": exchange.ai_response,
            "emotion": exchange.emotion,
            "emotion_reason": exchange.emotion_reason,
            "is_completed": exchange.is_completed,
        }

    @app.post("/api/conversations/{conversation_id}/realtime-messages")
    async def post_realtime_messages(
        conversation_id: str,
        payload: RealtimeMessagesRequest,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        try:
            view, saved, turn_count = await asyncio.to_thread(
                save_realtime_messages,
                store=runtime_store,
                conversation_id=conversation_id,
                user_id=context.user_id,
                messages=payload.messages,
            )
        except ConversationError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        await _persist()
        return {
            "conversation": _conversation_payload(view),
            "messages_saved": saved,
            "turn_count": turn_count,
        }

    @app.get("/api/conversations/{conversation_id}/score")
    async def conversation_score(
        conversation_id: str,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        view = _owned_conversation(conversation_id, context)
        breakdown = calculate_realtime_score(view.messages)
        return {
            "conversation_id": conversation_id,
            "score": breakdown.score,
            "base_score": breakdown.base_score,
            "user_message_count": breakdown.user_message_count,
            "category_hits": dict(breakdown.category_hits),
            "messages": [
                {
                    "message": row.message,
                    "delta": row.delta,
                    "categories": list(row.categories),
                }
                for row in breakdown.messages
            ],
            "turn_estimate": estimate_turn_score(view.persona_run.turn_count),
        }

    @app.post("/api/conversations/{conversation_id}/feedback")
    async def create_feedback(
        conversation_id: str,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        view = _owned_conversation(conversation_id, context)
        existing = runtime_store.feedback_by_persona_run.get(conversation_id)
        if existing is not None:
            return _feedback_payload(existing)

        scenario, persona = _catalog_entries(view)
        report = await asyncio.to_thread(
            build_feedback_report,
            view,
            model=feedback_model,
            scenario=scenario,
            persona=persona,
        )
        with runtime_store.lock:
            report = runtime_store.feedback_by_persona_run.setdefault(
                conversation_id, report
            )
        emit_event(
            "feedback_generated",
            conversation_id=conversation_id,
            overall_score=report.overall_score,
            provider=report.provider,
        )
        await _persist()
        return _feedback_payload(report)

    @app.get("/api/conversations/{conversation_id}/feedback")
    async def feedback_detail(
        conversation_id: str,
        context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        _owned_conversation(conversation_id, context)
        report = runtime_store.feedback_by_persona_run.get(conversation_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Feedback not found")
        return _feedback_payload(report)

    @app.post("/api/tts/generate")
    async def tts_generate(
        payload: SpeechRequest,
        _context: AuthContext = Depends(require_auth_context),
    ) -> dict[str, object]:
        persona = (
            find_persona_anywhere(store=runtime_store, persona_id=payload.scenario_id)
            if payload.scenario_id
            else None
        )
        try:
            result = await asyncio.to_thread(
                generate_speech,
                providers=speech_providers,
                text=payload.text,
                persona_id=payload.scenario_id,
                emotion=payload.emotion,
                catalog_gender=persona.gender if persona else None,
            )
        except InvalidSpeechRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SpeechSynthesisError as exc:
            raise HTTPException(
                status_code=500, detail=f"TTS generation failed: {exc}"
            ) from exc
        return {
            "success": True,
            "audio": result.audio_base64,
            "scenario_id": payload.scenario_id,
            "gender": result.gender,
            "emotion": result.emotion,
            "text_length": result.text_length,
            "provider": result.provider,
        }

    @app.get("/api/observability/traces")
    async def query_traces(
        context: AuthContext = Depends(require_admin),
    ) -> dict[str, object]:
        return {
            "user_id": context.user_id,
            "traces": [
                {
                    "trace_id": row.trace_id,
                    "conversation_id": row.conversation_id,
                    "mode": row.mode,
                    "provider": row.provider,
                    "skipped_turn": row.skipped_turn,
                    "latency_ms": row.latency_ms,
                }
                for row in runtime_store.message_trace_log[-50:]
            ],
        }

    return app
