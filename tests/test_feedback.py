from __future__ import annotations

import pytest

from rolecoach.app.conversations.contracts import (
    ConversationMessage,
    ConversationView,
    PersonaRun,
    ScenarioRun,
)
from rolecoach.app.feedback.contracts import DIMENSION_NAMES, FeedbackDraft
from rolecoach.app.feedback.service import (
    build_feedback_report,
    conversation_duration_seconds,
    rate_time_performance,
)
from rolecoach.app.llm.providers import FeedbackModel, FeedbackModelError


def _message(sender: str, text: str, second: int) -> ConversationMessage:
    minutes, seconds = divmod(second, 60)
    return ConversationMessage(
        sender=sender,
        message=text,
        timestamp=f"2025-03-01T10:{minutes:02d}:{seconds:02d}+00:00",
    )


def _view(*messages: ConversationMessage) -> ConversationView:
    return ConversationView(
        persona_run=PersonaRun(
            run_id="conv-test",
            scenario_run_id="srun-test",
            persona_id="communication",
            persona_name="Kim Taehoon",
            phase=1,
            mode="text",
            difficulty=2,
            status="completed",
            turn_count=2,
            started_at="2025-03-01T10:00:00+00:00",
        ),
        scenario_run=ScenarioRun(
            run_id="srun-test",
            user_id="user-1",
            scenario_id="project-delay",
            scenario_name="Project delay",
            attempt_number=1,
            mode="text",
            difficulty=2,
            status="active",
            started_at="2025-03-01T10:00:00+00:00",
        ),
        messages=messages,
    )


def _user_lines(*lengths: int) -> list[ConversationMessage]:
    return [_message("user", "x" * length, index) for index, length in enumerate(lengths)]


@pytest.mark.parametrize(
    ("lengths", "minutes", "expected"),
    [
        ((40,), 1.0, "excellent"),
        ((200, 200), 12.0, "good"),
        ((15,) * 10, 10.0, "good"),
        ((20,) * 12, 16.0, "average"),
        ((6,) * 10, 10.0, "average"),
        ((2,) * 5, 10.0, "slow"),
        ((40,), 0.0, "slow"),
    ],
)
def test_time_performance_uses_speech_density_and_length(
    lengths: tuple[int, ...], minutes: float, expected: str
) -> None:
    rating, detail = rate_time_performance(_user_lines(*lengths), minutes)

    assert rating == expected
    assert "chars/min" in detail


def test_time_performance_without_participation_is_slow() -> None:
    rating, detail = rate_time_performance([_message("ai", "Hello?", 0)], 3.0)

    assert rating == "slow"
    assert detail.startswith("No participation")


def test_duration_spans_run_start_to_latest_message() -> None:
    view = _view(
        _message("ai", "Explain the delay.", 10),
        _message("user", "A two week buffer.", 50),
    )

    assert conversation_duration_seconds(view) == 50.0


def test_report_for_constructive_transcript() -> None:
    report = build_feedback_report(
        _view(
            _message("ai", "Explain the delay.", 0),
            _message(
                "user",
                "I understand your concern, thank you. I propose a plan to ship in 2 weeks?",
                8,
            ),
        )
    )

    assert report.conversation_id == "conv-test"
    assert report.overall_score == 50 + 3 + 4 + 5 + 2 + 2 + 3
    assert len(report.scores) == 5
    assert all(1 <= row.score <= 5 for row in report.scores)
    assert report.improvements == ()
    assert report.time_performance == "excellent"
    assert report.average_response_time_seconds == 8.0
    assert report.provider == "keyword"


def test_report_without_user_messages_scores_minimum() -> None:
    report = build_feedback_report(_view(_message("ai", "Hello.", 0)))

    assert report.overall_score == 20
    assert {row.score for row in report.scores} == {1}
    assert report.strengths == ()
    assert report.improvements == tuple(DIMENSION_NAMES.values())
    assert report.summary.startswith("No trainee messages")
    assert report.time_performance == "slow"
    assert report.average_response_time_seconds is None


def test_hostile_transcript_lists_improvements() -> None:
    report = build_feedback_report(
        _view(
            _message("ai", "Explain the delay.", 0),
            _message("user", "whatever, this is your fault", 90),
        )
    )

    by_category = {row.category: row.score for row in report.scores}
    assert by_category["listening_empathy"] == 1
    assert by_category["strategic_communication"] == 1
    assert "Strategic communication" in report.improvements
    assert report.time_performance == "good"


def test_report_uses_model_review_when_available() -> None:
    class StubReviewer(FeedbackModel):
        provider_name = "stub"

        def review(self, **_kwargs) -> FeedbackDraft:
            return FeedbackDraft(
                overall_score=88,
                dimension_scores={key: 4 for key in DIMENSION_NAMES},
                strengths=("Calm tone",),
                improvements=("Quantify the impact",),
                next_steps=("Bring numbers",),
                summary="Solid negotiation.",
            )

    report = build_feedback_report(
        _view(
            _message("ai", "Explain the delay.", 0),
            _message("user", "We slipped two weeks, here is the plan.", 20),
        ),
        model=StubReviewer(),
    )

    assert report.provider == "stub"
    assert report.overall_score == 88
    assert {row.score for row in report.scores} == {4}
    assert report.next_steps == ("Bring numbers",)
    assert report.summary == "Solid negotiation."


def test_failing_model_falls_back_to_keyword_review() -> None:
    class BrokenReviewer(FeedbackModel):
        provider_name = "broken"

        def review(self, **_kwargs) -> FeedbackDraft:
            raise FeedbackModelError("not json")

    report = build_feedback_report(
        _view(
            _message("ai", "Explain the delay.", 0),
            _message("user", "whatever, this is your fault", 30),
        ),
        model=BrokenReviewer(),
    )

    assert report.provider == "keyword"
    assert "Strategic communication" in report.improvements
