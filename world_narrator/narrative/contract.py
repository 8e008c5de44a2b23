"""Structured-output contract between the model and the turn pipeline."""

from __future__ import annotations

from typing import Any, Iterable

from pydantic import ValidationError

from world_narrator.domain.actions import (
    ChangeRelationshipArgs,
    DialogueAction,
    GiveItemArgs,
    NarrativeAction,
    NarrativeResponse,
    ToolInvocationAction,
    WorldMutationAction,
)
from world_narrator.domain.errors import ContractViolationError
from world_narrator.domain.projection import WorldProjection
from world_narrator.narrative.json_utils import safe_load_json

NARRATOR = "narrator"


def _format_validation_errors(exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "-"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return problems


def parse_narrative_response(raw: str, *, max_actions: int | None = None) -> list[NarrativeAction]:
    """Decodes and validates a model reply into narrative actions.

    Raises:
        ContractViolationError: the reply is not JSON or does not match the
            action schema. ``errors`` lists every problem found.
    """

    try:
        payload: Any = safe_load_json(raw)
    except ValueError as exc:
        raise ContractViolationError(f"reply is not valid JSON: {exc}") from exc

    if isinstance(payload, list):
        payload = {"actions": payload}
    if not isinstance(payload, dict):
        raise ContractViolationError("reply must be a JSON object with an 'actions' list")

    try:
        response = NarrativeResponse.model_validate(payload)
    except ValidationError as exc:
        errors = _format_validation_errors(exc)
        raise ContractViolationError(f"reply violates the action schema ({len(errors)} errors)", errors) from exc

    if max_actions is not None and len(response.actions) > max_actions:
        raise ContractViolationError(
            f"reply has {len(response.actions)} actions, at most {max_actions} are allowed"
        )
    return list(response.actions)


def _referenced_entities(action: NarrativeAction) -> Iterable[tuple[str, str]]:
    if isinstance(action, DialogueAction):
        if action.speaker != NARRATOR:
            yield "speaker", action.speaker
    elif isinstance(action, WorldMutationAction):
        yield "entity_id", action.entity_id
    elif isinstance(action, ToolInvocationAction):
        args = action.parsed_arguments()
        if isinstance(args, GiveItemArgs) and args.recipient:
            yield "arguments.recipient", args.recipient
        elif isinstance(args, ChangeRelationshipArgs):
            yield "arguments.source", args.source
            yield "arguments.target", args.target


def validate_references(actions: list[NarrativeAction], projection: WorldProjection) -> list[str]:
    """Returns one message per action field that names an unknown entity."""

    errors: list[str] = []
    for index, action in enumerate(actions):
        for field_name, entity_id in _referenced_entities(action):
            try:
                known = projection.has_entity(entity_id)
            except ValueError:
                known = False
            if not known:
                errors.append(f"actions.{index}.{field_name}: unknown entity '{entity_id}'")
    return errors


def ensure_valid_actions(
    raw: str,
    projection: WorldProjection,
    *,
    max_actions: int | None = None,
) -> list[NarrativeAction]:
    actions = parse_narrative_response(raw, max_actions=max_actions)
    errors = validate_references(actions, projection)
    if errors:
        raise ContractViolationError(f"reply references {len(errors)} unknown entities", errors)
    return actions
