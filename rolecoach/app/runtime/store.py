from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path

from rolecoach.app.auth.contracts import LoginAttempts, UserAccount
from rolecoach.app.catalog.contracts import PersonaProfile, Scenario
from rolecoach.app.catalog.payloads import (
    CatalogPayloadError,
    persona_profile_from_payload,
    persona_profile_to_payload,
    scenario_from_payload,
    scenario_to_payload,
)
from rolecoach.app.conversations.contracts import (
    ConversationMessage,
    PersonaRun,
    ScenarioRun,
)
from rolecoach.app.feedback.contracts import DimensionScore, FeedbackReport
from rolecoach.app.observability.contracts import MessageTrace

LOGGER = logging.getLogger(__name__)


@dataclass
class RuntimeStore:
    scenarios: dict[str, Scenario] = field(default_factory=dict)
    persona_profiles: dict[str, PersonaProfile] = field(default_factory=dict)
    users_by_id: dict[str, UserAccount] = field(default_factory=dict)
    user_ids_by_email: dict[str, str] = field(default_factory=dict)
    # keyed by "<client host>:<email>"
    login_attempts: dict[str, LoginAttempts] = field(default_factory=dict)
    scenario_runs: dict[str, ScenarioRun] = field(default_factory=dict)
    persona_runs: dict[str, PersonaRun] = field(default_factory=dict)
    messages_by_persona_run: dict[str, list[ConversationMessage]] = field(
        default_factory=dict
    )
    feedback_by_persona_run: dict[str, FeedbackReport] = field(default_factory=dict)
    message_trace_log: list[MessageTrace] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    conversation_locks: dict[str, threading.Lock] = field(
        default_factory=dict, repr=False
    )


def conversation_lock(store: RuntimeStore, conversation_id: str) -> threading.Lock:
    """Return the lock that serialises exchanges on one conversation."""
    with store.lock:
        return store.conversation_locks.setdefault(conversation_id, threading.Lock())


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _runtime_state_path() -> Path:
    base = _repo_root() / ".tmp"
    base.mkdir(parents=True, exist_ok=True)
    return base / "runtime_state.json"


def _load_json(path: Path) -> object:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _scenarios_from_rows(raw: object) -> dict[str, Scenario]:
    scenarios: dict[str, Scenario] = {}
    if not isinstance(raw, list):
        return scenarios
    for row in raw:
        try:
            scenario = scenario_from_payload(row)
        except CatalogPayloadError as exc:
            LOGGER.warning("skipping invalid scenario: %s", exc)
            continue
        scenarios[scenario.scenario_id] = scenario
    return scenarios


def _persona_profiles_from_rows(raw: object) -> dict[str, PersonaProfile]:
    profiles: dict[str, PersonaProfile] = {}
    if not isinstance(raw, list):
        return profiles
    for row in raw:
        try:
            profile = persona_profile_from_payload(row)
        except CatalogPayloadError as exc:
            LOGGER.warning("skipping invalid persona: %s", exc)
            continue
        profiles[profile.persona_id] = profile
    return profiles


def _load_seed_scenarios() -> dict[str, Scenario]:
    return _scenarios_from_rows(
        _load_json(_repo_root() / "data" / "catalog" / "scenarios.json")
    )


def _load_seed_persona_profiles() -> dict[str, PersonaProfile]:
    return _persona_profiles_from_rows(
        _load_json(_repo_root() / "data" / "catalog" / "personas.json")
    )


def _hydrate(cls: type, rows: object) -> list:
    if not isinstance(rows, list):
        return []
    hydrated = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            hydrated.append(cls(**row))
        except TypeError:
            continue
    return hydrated


def _str_tuple(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _hydrate_feedback(rows: object) -> list[FeedbackReport]:
    if not isinstance(rows, list):
        return []
    reports: list[FeedbackReport] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            scores = tuple(
                DimensionScore(**score)
                for score in row.get("scores", [])
                if isinstance(score, dict)
            )
            reports.append(
                FeedbackReport(
                    **{
                        **row,
                        "scores": scores,
                        "strengths": _str_tuple(row.get("strengths")),
                        "improvements": _str_tuple(row.get("improvements")),
                        "next_steps": _str_tuple(row.get("next_steps")),
                    }
                )
            )
        except TypeError:
            continue
    return reports


def _load_persisted_runtime_state() -> dict[str, object]:
    path = _runtime_state_path()
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _runtime_state_payload(store: RuntimeStore) -> dict[str, object]:
    seed_scenario_ids = set(_load_seed_scenarios())
    seed_persona_ids = set(_load_seed_persona_profiles())
    return {
        "users": [asdict(user) for user in store.users_by_id.values()],
        "scenarios": [scenario_to_payload(row) for row in store.scenarios.values()],
        "removed_scenario_ids": sorted(seed_scenario_ids - set(store.scenarios)),
        "persona_profiles": [
            persona_profile_to_payload(row) for row in store.persona_profiles.values()
        ],
        "removed_persona_ids": sorted(seed_persona_ids - set(store.persona_profiles)),
        "scenario_runs": [asdict(run) for run in store.scenario_runs.values()],
        "persona_runs": [asdict(run) for run in store.persona_runs.values()],
        "messages_by_persona_run": {
            run_id: [asdict(message) for message in messages]
            for run_id, messages in store.messages_by_persona_run.items()
        },
        "feedback": [asdict(report) for report in store.feedback_by_persona_run.values()],
    }


def persist_runtime_state(store: RuntimeStore) -> None:
    with store.lock:
        payload = _runtime_state_payload(store)
        path = _runtime_state_path()
        temp_path = path.with_suffix(".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False)
        temp_path.replace(path)


def clear_runtime_state_persistence() -> None:
    path = _runtime_state_path()
    if path.exists():
        path.unlink()


def hydrate_runtime_state(store: RuntimeStore) -> None:
    """Layer persisted state over the seeded catalog and current store."""
    persisted = _load_persisted_runtime_state()
    with store.lock:
        for user in _hydrate(UserAccount, persisted.get("users")):
            store.users_by_id[user.user_id] = user
            store.user_ids_by_email[user.email] = user.user_id

        store.scenarios.update(_scenarios_from_rows(persisted.get("scenarios")))
        for scenario_id in _str_tuple(persisted.get("removed_scenario_ids")):
            store.scenarios.pop(scenario_id, None)
        store.persona_profiles.update(
            _persona_profiles_from_rows(persisted.get("persona_profiles"))
        )
        for persona_id in _str_tuple(persisted.get("removed_persona_ids")):
            store.persona_profiles.pop(persona_id, None)

        for run in _hydrate(ScenarioRun, persisted.get("scenario_runs")):
            store.scenario_runs[run.run_id] = run
        for run in _hydrate(PersonaRun, persisted.get("persona_runs")):
            store.persona_runs[run.run_id] = run
        raw_messages = persisted.get("messages_by_persona_run")
        if isinstance(raw_messages, dict):
            for run_id, rows in raw_messages.items():
                if run_id in store.persona_runs:
                    store.messages_by_persona_run[run_id] = _hydrate(
                        ConversationMessage, rows
                    )
        for report in _hydrate_feedback(persisted.get("feedback")):
            if report.conversation_id in store.persona_runs:
                store.feedback_by_persona_run[report.conversation_id] = report


def reset_runtime_store(store: RuntimeStore) -> None:
    with store.lock:
        store.users_by_id.clear()
        store.user_ids_by_email.clear()
        store.login_attempts.clear()
        store.scenario_runs.clear()
        store.persona_runs.clear()
        store.messages_by_persona_run.clear()
        store.feedback_by_persona_run.clear()
        store.message_trace_log.clear()
        store.conversation_locks.clear()
        store.scenarios = _load_seed_scenarios()
        store.persona_profiles = _load_seed_persona_profiles()


def _build_store() -> RuntimeStore:
    return RuntimeStore(
        scenarios=_load_seed_scenarios(),
        persona_profiles=_load_seed_persona_profiles(),
    )


runtime_store = _build_store()
