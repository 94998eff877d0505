from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import rolecoach.app.api.app as api_app
from rolecoach.app.auth.access import register_user
from rolecoach.app.auth.contracts import ROLE_ADMIN
from rolecoach.app.feedback.contracts import DIMENSION_NAMES, FeedbackDraft
from rolecoach.app.llm.providers import (
    FeedbackModel,
    FeedbackModelError,
    PersonaModel,
    PersonaModelError,
)
from rolecoach.app.runtime.store import runtime_store
from main import app

PASSWORD = "Trainee#2025"


def _headers(client: TestClient, email: str = "trainee@example.com") -> dict[str, str]:
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": PASSWORD, "name": "Trainee"},
    )
    assert response.status_code == 201
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _start(
    client: TestClient,
    headers: dict[str, str],
    persona_id: str = "communication",
    mode: str = "text",
) -> dict[str, object]:
    response = client.post(
        "/api/conversations",
        json={"scenario_id": "project-delay", "persona_id": persona_id, "mode": mode},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()


def test_create_text_conversation_generates_opening_message() -> None:
    client = TestClient(app)
    headers = _headers(client)

    conversation = _start(client, headers)

    assert conversation["status"] == "active"
    assert conversation["phase"] == 1
    assert conversation["attempt_number"] == 1
    assert conversation["turn_count"] == 0
    assert [row["sender"] for row in conversation["messages"]] == ["ai"]


def test_realtime_voice_conversation_starts_empty() -> None:
    client = TestClient(app)
    headers = _headers(client)

    conversation = _start(client, headers, mode="realtime_voice")

    assert conversation["messages"] == []


def test_create_rejects_unknown_scenario_and_mode() -> None:
    client = TestClient(app)
    headers = _headers(client)

    unknown = client.post(
        "/api/conversations", json={"scenario_id": "nope"}, headers=headers
    )
    bad_mode = client.post(
        "/api/conversations",
        json={"scenario_id": "project-delay", "mode": "video"},
        headers=headers,
    )

    assert unknown.status_code == 400
    assert bad_mode.status_code == 400


def test_conversation_completes_after_max_turns() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]

    for turn in range(1, 4):
        response = client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"message": f"Thank you. I propose we review the plan in {turn} days."},
            headers=headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["conversation"]["turn_count"] == turn
        assert body["emotion"] == "joy"
        assert body["is_completed"] is (turn == 3)

    closed = client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "One more thing."},
        headers=headers,
    )
    assert closed.status_code == 400


def test_skip_turn_stores_only_the_ai_reply() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]

    response = client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "   "},
        headers=headers,
    )

    assert response.status_code == 200
    senders = [row["sender"] for row in response.json()["conversation"]["messages"]]
    assert senders == ["ai", "ai"]
    assert response.json()["conversation"]["turn_count"] == 1


def test_non_string_message_is_rejected() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]

    response = client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": 42},
        headers=headers,
    )

    assert response.status_code == 400


def test_persona_failure_returns_bad_gateway_without_orphan_message(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    class FailingModel(PersonaModel):
        provider_name = "failing"

        def generate_reply(self, **_kwargs):
            raise PersonaModelError("model offline")

    monkeypatch.setattr(api_app, "build_persona_model", lambda **_kwargs: FailingModel())
    client = TestClient(api_app.create_app())
    headers = _headers(client)

    conversation = _start(client, headers)
    assert conversation["messages"] == []

    response = client.post(
        f"/api/conversations/{conversation['id']}/messages",
        json={"message": "Hello there, can we talk?"},
        headers=headers,
    )

    assert response.status_code == 502
    assert runtime_store.messages_by_persona_run[conversation["id"]] == []


def test_other_users_cannot_read_conversation() -> None:
    client = TestClient(app)
    owner = _headers(client, "owner@example.com")
    intruder = _headers(client, "intruder@example.com")
    conversation_id = _start(client, owner)["id"]

    assert client.get(f"/api/conversations/{conversation_id}", headers=intruder).status_code == 403
    assert client.get("/api/conversations/conv-missing", headers=owner).status_code == 404
    assert client.get(f"/api/conversations/{conversation_id}").status_code == 401


def test_scenario_run_reuse_phases_and_auto_completion() -> None:
    client = TestClient(app)
    headers = _headers(client)

    first = _start(client, headers, persona_id="communication", mode="realtime_voice")
    second = _start(client, headers, persona_id="presentation", mode="realtime_voice")
    assert second["scenario_run_id"] == first["scenario_run_id"]
    assert second["phase"] == 2

    transcript = [
        {"sender": "ai", "message": "Go ahead."},
        {"sender": "user", "message": "Thank you for the time."},
    ]
    for conversation in (first, second):
        saved = client.post(
            f"/api/conversations/{conversation['id']}/realtime-messages",
            json={"messages": transcript},
            headers=headers,
        )
        assert saved.status_code == 200
        assert saved.json()["messages_saved"] == 2
        assert saved.json()["turn_count"] == 1

    detail = client.get(f"/api/conversations/{second['id']}", headers=headers).json()
    assert detail["status"] == "completed"
    assert detail["scenario_status"] == "completed"

    retry = _start(client, headers)
    assert retry["scenario_run_id"] != first["scenario_run_id"]
    assert retry["attempt_number"] == 2


def test_realtime_messages_validate_body() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers, mode="realtime_voice")["id"]

    not_a_list = client.post(
        f"/api/conversations/{conversation_id}/realtime-messages",
        json={"messages": "hello"},
        headers=headers,
    )
    bad_sender = client.post(
        f"/api/conversations/{conversation_id}/realtime-messages",
        json={"messages": [{"sender": "system", "message": "x"}]},
        headers=headers,
    )

    assert not_a_list.status_code == 400
    assert bad_sender.status_code == 400


def test_score_and_feedback_endpoints() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers, mode="realtime_voice")["id"]
    client.post(
        f"/api/conversations/{conversation_id}/realtime-messages",
        json={
            "messages": [
                {"sender": "ai", "message": "Why is it late?", "emotion": "anger"},
                {
                    "sender": "user",
                    "message": "I understand your concern, thank you for raising it early.",
                },
            ]
        },
        headers=headers,
    )

    score = client.get(f"/api/conversations/{conversation_id}/score", headers=headers)
    assert score.status_code == 200
    assert score.json()["score"] == 60
    assert score.json()["turn_estimate"] == pytest.approx(8.3)

    missing = client.get(f"/api/conversations/{conversation_id}/feedback", headers=headers)
    assert missing.status_code == 404

    created = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers)
    assert created.status_code == 200
    assert created.json()["overall_score"] == 60
    assert len(created.json()["scores"]) == 5

    fetched = client.get(f"/api/conversations/{conversation_id}/feedback", headers=headers)
    assert fetched.json() == created.json()


def test_list_and_delete_conversations() -> None:
    client = TestClient(app)
    headers = _headers(client)
    first = _start(client, headers)
    second = _start(client, headers, persona_id="presentation")

    listed = client.get("/api/conversations", headers=headers).json()["conversations"]
    assert {row["id"] for row in listed} == {first["id"], second["id"]}

    assert client.delete(f"/api/conversations/{first['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/conversations/{first['id']}", headers=headers).status_code == 404
    assert first["scenario_run_id"] in runtime_store.scenario_runs

    client.delete(f"/api/conversations/{second['id']}", headers=headers)
    assert first["scenario_run_id"] not in runtime_store.scenario_runs


def test_message_traces_are_admin_only() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]
    client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": ""},
        headers=headers,
    )

    assert client.get("/api/observability/traces", headers=headers).status_code == 403

    register_user(
        store=runtime_store,
        email="admin@example.com",
        password=PASSWORD,
        name="Admin",
        role=ROLE_ADMIN,
    )
    login = client.post(
        "/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD}
    )
    client.cookies.clear()
    admin_headers = {"Authorization": f"Bearer {login.json()['token']}"}

    traces = client.get("/api/observability/traces", headers=admin_headers).json()["traces"]
    assert len(traces) == 1
    assert traces[0]["conversation_id"] == conversation_id
    assert traces[0]["skipped_turn"] is True
    assert traces[0]["provider"] == "deterministic"


def test_conversation_payload_carries_persona_images() -> None:
    client = TestClient(app)
    headers = _headers(client)
    opened = _start(client, headers)

    assert opened["persona_image"] == "/personas/communication/neutral.webp"
    assert set(opened["persona_images"]) == {"neutral", "anger", "joy"}

    created = client.post(
        "/api/conversations",
        json={"scenario_id": "customer-complaint", "persona_id": "crisis"},
        headers=headers,
    ).json()
    skipped = client.post(
        f"/api/conversations/{created['id']}/messages",
        json={"message": ""},
        headers=headers,
    ).json()

    assert skipped["emotion"] == "anger"
    assert skipped["conversation"]["persona_image"] == "/personas/crisis/anger.webp"


def test_feedback_generation_is_idempotent() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]
    client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "I propose a two week recovery plan."},
        headers=headers,
    )

    first = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers)
    client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "whatever"},
        headers=headers,
    )
    second = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers)

    assert second.status_code == 200
    assert second.json() == first.json()
    assert second.json()["created_at"] == first.json()["created_at"]


def test_feedback_without_trainee_lines_is_rated_slow() -> None:
    client = TestClient(app)
    headers = _headers(client)
    conversation_id = _start(client, headers, mode="realtime_voice")["id"]
    client.post(
        f"/api/conversations/{conversation_id}/realtime-messages",
        json={"messages": [{"sender": "ai", "message": "Why is it late?"}]},
        headers=headers,
    )

    report = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers)

    assert report.json()["time_performance"] == "slow"
    assert report.json()["overall_score"] == 20
    assert report.json()["time_performance_feedback"].startswith("No participation")


def test_feedback_uses_configured_review_model(monkeypatch: pytest.MonkeyPatch) -> None:
    class StubReviewer(FeedbackModel):
        provider_name = "google"

        def review(self, **kwargs) -> FeedbackDraft:
            assert kwargs["scenario"].scenario_id == "project-delay"
            assert kwargs["persona"].persona_id == "communication"
            return FeedbackDraft(
                overall_score=91,
                dimension_scores={key: 5 for key in DIMENSION_NAMES},
                strengths=("Clear ask",),
                improvements=(),
                next_steps=("Keep the same structure",),
                summary="Strong recovery plan.",
            )

    monkeypatch.setattr(api_app, "build_feedback_model", lambda **_kwargs: StubReviewer())
    client = TestClient(api_app.create_app())
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]
    client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "I propose a two week recovery plan."},
        headers=headers,
    )

    body = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers).json()

    assert body["provider"] == "google"
    assert body["overall_score"] == 91
    assert {row["score"] for row in body["scores"]} == {5}
    assert body["next_steps"] == ["Keep the same structure"]


def test_feedback_falls_back_when_review_model_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenReviewer(FeedbackModel):
        provider_name = "google"

        def review(self, **_kwargs) -> FeedbackDraft:
            raise FeedbackModelError("reply was not JSON")

    monkeypatch.setattr(api_app, "build_feedback_model", lambda **_kwargs: BrokenReviewer())
    client = TestClient(api_app.create_app())
    headers = _headers(client)
    conversation_id = _start(client, headers)["id"]
    client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"message": "I propose a two week recovery plan."},
        headers=headers,
    )

    body = client.post(f"/api/conversations/{conversation_id}/feedback", headers=headers).json()

    assert body["provider"] == "keyword"
    assert len(body["scores"]) == 5
