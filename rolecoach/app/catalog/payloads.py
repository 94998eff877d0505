from __future__ import annotations

from rolecoach.app.catalog.contracts import (
    PersonaProfile,
    Scenario,
    ScenarioPersona,
)


class CatalogPayloadError(ValueError):
    pass


def _str_tuple(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _required_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise CatalogPayloadError(f"Missing or invalid field: {key}")
    return value.strip()


def _optional_str(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def scenario_persona_from_payload(payload: object) -> ScenarioPersona:
    if not isinstance(payload, dict):
        raise CatalogPayloadError("Persona entry must be an object")
    images = payload.get("images")
    gender = _optional_str(payload, "gender") or "male"
    if gender not in {"male", "female"}:
        raise CatalogPayloadError(f"Unsupported gender: {gender}")
    mbti = _optional_str(payload, "mbti")
    return ScenarioPersona(
        persona_id=_required_str(payload, "id"),
        name=_required_str(payload, "name"),
        role=_optional_str(payload, "role") or "",
        department=_optional_str(payload, "department") or "",
        mbti=mbti.upper() if mbti else None,
        gender=gender,
        stance=_optional_str(payload, "stance"),
        goal=_optional_str(payload, "goal"),
        images=(
            {
                str(key): str(value)
                for key, value in images.items()
                if isinstance(value, str)
            }
            if isinstance(images, dict)
            else {}
        ),
    )


def scenario_from_payload(payload: object) -> Scenario:
    if not isinstance(payload, dict):
        raise CatalogPayloadError("Scenario must be an object")
    difficulty = payload.get("difficulty", 2)
    if not isinstance(difficulty, int) or not 1 <= difficulty <= 4:
        raise CatalogPayloadError("difficulty must be an integer between 1 and 4")
    raw_personas = payload.get("personas", [])
    if not isinstance(raw_personas, list):
        raise CatalogPayloadError("personas must be a list")
    personas = tuple(scenario_persona_from_payload(row) for row in raw_personas)
    persona_ids = [persona.persona_id for persona in personas]
    if len(set(persona_ids)) != len(persona_ids):
        raise CatalogPayloadError("persona ids must be unique within a scenario")
    return Scenario(
        scenario_id=_required_str(payload, "id"),
        title=_required_str(payload, "title"),
        description=_optional_str(payload, "description") or "",
        difficulty=difficulty,
        player_role=_optional_str(payload, "player_role") or "",
        objectives=_str_tuple(payload.get("objectives")),
        skills=_str_tuple(payload.get("skills")),
        personas=personas,
    )


def persona_profile_from_payload(payload: object) -> PersonaProfile:
    if not isinstance(payload, dict):
        raise CatalogPayloadError("Persona profile must be an object")
    return PersonaProfile(
        persona_id=_required_str(payload, "id"),
        mbti=_required_str(payload, "mbti").upper(),
        communication_style=_optional_str(payload, "communication_style")
        or "balanced communication",
        opening_style=_optional_str(payload, "opening_style")
        or "opens the conversation to fit the situation",
        win_conditions=_str_tuple(payload.get("win_conditions")),
        personal_values=_str_tuple(payload.get("personal_values")),
    )


def scenario_persona_to_payload(persona: ScenarioPersona) -> dict[str, object]:
    return {
        "id": persona.persona_id,
        "name": persona.name,
        "role": persona.role,
        "department": persona.department,
        "mbti": persona.mbti,
        "gender": persona.gender,
        "stance": persona.stance,
        "goal": persona.goal,
        "images": dict(persona.images),
    }


def scenario_to_payload(scenario: Scenario) -> dict[str, object]:
    return {
        "id": scenario.scenario_id,
        "title": scenario.title,
        "description": scenario.description,
        "difficulty": scenario.difficulty,
        "player_role": scenario.player_role,
        "objectives": list(scenario.objectives),
        "skills": list(scenario.skills),
        "personas": [scenario_persona_to_payload(p) for p in scenario.personas],
    }


def persona_profile_to_payload(profile: PersonaProfile) -> dict[str, object]:
    return {
        "id": profile.persona_id,
        "mbti": profile.mbti,
        "communication_style": profile.communication_style,
        "opening_style": profile.opening_style,
        "win_conditions": list(profile.win_conditions),
        "personal_values": list(profile.personal_values),
    }
