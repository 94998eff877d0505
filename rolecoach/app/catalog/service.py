from __future__ import annotations

from rolecoach.app.catalog.contracts import (
    EMOTION_NEUTRAL,
    PersonaProfile,
    Scenario,
    ScenarioPersona,
)
from rolecoach.app.catalog.payloads import (
    persona_profile_from_payload,
    scenario_from_payload,
)
from rolecoach.app.runtime.store import RuntimeStore


class CatalogNotFoundError(LookupError):
    pass


class CatalogConflictError(ValueError):
    pass


def list_scenarios(*, store: RuntimeStore) -> list[Scenario]:
    return sorted(store.scenarios.values(), key=lambda row: row.scenario_id)


def get_scenario(*, store: RuntimeStore, scenario_id: str) -> Scenario:
    scenario = store.scenarios.get(scenario_id)
    if scenario is None:
        raise CatalogNotFoundError(f"Scenario not found: {scenario_id}")
    return scenario


def find_scenario_persona(scenario: Scenario, persona_id: str) -> ScenarioPersona:
    persona = next(
        (row for row in scenario.personas if row.persona_id == persona_id), None
    )
    if persona is None:
        raise CatalogNotFoundError(
            f"Persona not found in scenario {scenario.scenario_id}: {persona_id}"
        )
    return persona


def find_persona_anywhere(
    *, store: RuntimeStore, persona_id: str
) -> ScenarioPersona | None:
    for scenario in store.scenarios.values():
        for persona in scenario.personas:
            if persona.persona_id == persona_id:
                return persona
    return None


def get_persona_profile(
    *, store: RuntimeStore, persona: ScenarioPersona
) -> PersonaProfile | None:
    if not persona.mbti:
        return None
    return store.persona_profiles.get(persona.mbti.lower())


def persona_image_for(persona: ScenarioPersona, emotion: str | None) -> str | None:
    if emotion and emotion in persona.images:
        return persona.images[emotion]
    return persona.images.get(EMOTION_NEUTRAL)


def create_scenario(*, store: RuntimeStore, payload: dict[str, object]) -> Scenario:
    scenario = scenario_from_payload(payload)
    with store.lock:
        if scenario.scenario_id in store.scenarios:
            raise CatalogConflictError(
                f"Scenario already exists: {scenario.scenario_id}"
            )
        store.scenarios[scenario.scenario_id] = scenario
    return scenario


def update_scenario(
    *, store: RuntimeStore, scenario_id: str, payload: dict[str, object]
) -> Scenario:
    get_scenario(store=store, scenario_id=scenario_id)
    scenario = scenario_from_payload({**payload, "id": scenario_id})
    with store.lock:
        get_scenario(store=store, scenario_id=scenario_id)
        store.scenarios[scenario_id] = scenario
    return scenario


def delete_scenario(*, store: RuntimeStore, scenario_id: str) -> None:
    with store.lock:
        get_scenario(store=store, scenario_id=scenario_id)
        store.scenarios.pop(scenario_id, None)


def list_persona_profiles(*, store: RuntimeStore) -> list[PersonaProfile]:
    return sorted(store.persona_profiles.values(), key=lambda row: row.persona_id)


def get_persona_profile_by_id(
    *, store: RuntimeStore, persona_id: str
) -> PersonaProfile:
    profile = store.persona_profiles.get(persona_id)
    if profile is None:
        raise CatalogNotFoundError(f"Persona not found: {persona_id}")
    return profile


def create_persona_profile(
    *, store: RuntimeStore, payload: dict[str, object]
) -> PersonaProfile:
    profile = persona_profile_from_payload(payload)
    with store.lock:
        if profile.persona_id in store.persona_profiles:
            raise CatalogConflictError(f"Persona already exists: {profile.persona_id}")
        store.persona_profiles[profile.persona_id] = profile
    return profile


def update_persona_profile(
    *, store: RuntimeStore, persona_id: str, payload: dict[str, object]
) -> PersonaProfile:
    get_persona_profile_by_id(store=store, persona_id=persona_id)
    profile = persona_profile_from_payload({**payload, "id": persona_id})
    with store.lock:
        get_persona_profile_by_id(store=store, persona_id=persona_id)
        store.persona_profiles[persona_id] = profile
    return profile


def delete_persona_profile(*, store: RuntimeStore, persona_id: str) -> None:
    with store.lock:
        get_persona_profile_by_id(store=store, persona_id=persona_id)
        store.persona_profiles.pop(persona_id, None)
