from __future__ import annotations

from typing import Any, Protocol

import orjson
from loguru import logger

from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.events import StoryEvent
from world_narrator.domain.ids import EntityId
from world_narrator.domain.projection import EntityRecord, WorldProjection
from world_narrator.narrative.prompts.turn import turn_prompt
from world_narrator.narrative.state import TurnPipelineState

_EVENT_META_KEYS = frozenset({"turn_id"})


class RecentEventSource(Protocol):
    async def recent_events(self, world_id: str, limit: int) -> list[StoryEvent]: ...


def _dumps(value: Any) -> str:
    return orjson.dumps(value, option=orjson.OPT_INDENT_2).decode("utf-8")


def _mentions(text: str, needle: str) -> bool:
    needle = needle.strip().lower()
    return bool(needle) and needle in text


def select_context_entities(
    projection: WorldProjection,
    *,
    actor: str,
    input_text: str,
    limit: int,
) -> list[EntityRecord]:
    """Picks the entities a turn refers to, most relevant first.

    The actor comes first, then the scene the actor is in, then every entity
    whose id or name occurs in the player input, in id order.
    """

    selected: dict[EntityId, EntityRecord] = {}

    def _add(record: EntityRecord | None) -> None:
        if record is not None and record.entity_id not in selected and len(selected) < limit:
            selected[record.entity_id] = record

    actor_record = projection.get_entity(actor)
    _add(actor_record)
    if actor_record is not None:
        location = actor_record.attributes.get("location")
        if isinstance(location, str):
            try:
                _add(projection.get_entity(location))
            except ValueError:
                pass

    lowered = input_text.lower()
    for entity_id in sorted(projection.entities):
        record = projection.entities[entity_id]
        if _mentions(lowered, str(entity_id)) or _mentions(lowered, str(record.attributes.get("name") or "")):
            _add(record)
    return list(selected.values())


def _relationships_among(projection: WorldProjection, ids: set[EntityId]) -> list[dict[str, Any]]:
    return [
        edge.to_dict()
        for key, edge in sorted(projection.relationships.items(), key=lambda item: tuple(str(part) for part in item[0]))
        if key[0] in ids or key[1] in ids
    ]


def _compact_event(event: StoryEvent) -> dict[str, Any]:
    payload = {key: value for key, value in event.payload.items() if key not in _EVENT_META_KEYS}
    return {"sequence": event.sequence, "kind": event.kind, **payload}


def _known_entity_index(projection: WorldProjection, limit: int) -> list[str]:
    index: list[str] = []
    for entity_id in sorted(projection.entities)[:limit]:
        record = projection.entities[entity_id]
        index.append(f"{entity_id} ({record.kind}): {record.name}")
    return index


async def run(state: TurnPipelineState, *, config: AppConfigRoot, store: RecentEventSource) -> dict:
    narrative = config.narrative
    snapshot = state["snapshot"]
    node_log = logger.bind(node="context_build", world_id=state["world_id"], turn_id=state["turn_id"])

    recent = await store.recent_events(state["world_id"], narrative.recent_events_window)
    entities = select_context_entities(
        snapshot,
        actor=state["actor"],
        input_text=state["input_text"],
        limit=narrative.max_context_entities,
    )
    entity_ids = {record.entity_id for record in entities}
    world_state = {
        "entities": [record.to_dict() for record in entities],
        "relationships": _relationships_among(snapshot, entity_ids),
    }

    prompt = turn_prompt(
        language=narrative.language,
        style=narrative.style,
        max_actions=narrative.max_actions,
        actor_id=state["actor"],
        world_state=_dumps(world_state),
        known_entities="\n".join(_known_entity_index(snapshot, narrative.max_known_entities)) or "(none)",
        recent_events=_dumps([_compact_event(event) for event in recent]) if recent else "(none)",
        player_input=state["input_text"],
    )
    node_log.debug(
        "Built turn context entities={} recent_events={} prompt={}",
        len(entities),
        len(recent),
        prompt.fingerprint,
    )
    return {
        "base_prompt": prompt,
        "prompt": prompt,
        "context_entities": [str(record.entity_id) for record in entities],
        "recent_event_count": len(recent),
        "corrections_used": 0,
        "model_calls": 0,
        "degraded": False,
    }
