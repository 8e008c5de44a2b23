"""In-memory projection of a world derived from its event log.

Entities live in a flat table keyed by identifier and relationships are
identifier-to-identifier edges, so a projection can always be thrown away and
rebuilt from the log with :func:`replay`.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable

from world_narrator.domain.errors import WorldCorruptedError
from world_narrator.domain.events import (
    CHOICE_SUGGESTED,
    DIALOGUE,
    ENTITY_CREATED,
    ENTITY_MUTATED,
    EVENT_TRIGGERED,
    INFO_REVEALED,
    ITEM_GRANTED,
    LOGGED_EVENT_KINDS,
    RELATIONSHIP_CHANGED,
    StoryEvent,
)
from world_narrator.domain.hashing import payload_hash
from world_narrator.domain.ids import EntityId

RelationshipKey = tuple[EntityId, EntityId, str]


@dataclass
class EntityRecord:
    entity_id: EntityId
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.attributes.get("name") or self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": str(self.entity_id), "kind": self.kind, "attributes": dict(self.attributes)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityRecord":
        return cls(
            entity_id=EntityId.parse(data["id"]),
            kind=str(data["kind"]),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class Relationship:
    source: EntityId
    target: EntityId
    relation: str
    sentiment: float = 0.0

    @property
    def key(self) -> RelationshipKey:
        return (self.source, self.target, self.relation)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": str(self.source),
            "target": str(self.target),
            "relation": self.relation,
            "sentiment": self.sentiment,
        }


@dataclass
class WorldProjection:
    world_id: str
    sequence: int = 0
    entities: dict[EntityId, EntityRecord] = field(default_factory=dict)
    relationships: dict[RelationshipKey, Relationship] = field(default_factory=dict)

    def has_entity(self, entity_id: EntityId | str) -> bool:
        key = entity_id if isinstance(entity_id, EntityId) else EntityId.parse(entity_id)
        return key in self.entities

    def get_entity(self, entity_id: EntityId | str) -> EntityRecord | None:
        key = entity_id if isinstance(entity_id, EntityId) else EntityId.parse(entity_id)
        return self.entities.get(key)

    def clone(self) -> "WorldProjection":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_id": self.world_id,
            "sequence": self.sequence,
            "entities": sorted((record.to_dict() for record in self.entities.values()), key=lambda item: item["id"]),
            "relationships": sorted(
                (edge.to_dict() for edge in self.relationships.values()),
                key=lambda item: (item["source"], item["target"], item["relation"]),
            ),
        }


@dataclass
class AppliedChange:
    """Identifiers touched by a single applied event."""

    entities: set[EntityId] = field(default_factory=set)
    relationships: set[RelationshipKey] = field(default_factory=set)

    def merge(self, other: "AppliedChange") -> None:
        self.entities |= other.entities
        self.relationships |= other.relationships


def clamp_sentiment(value: float) -> float:
    return max(-1.0, min(1.0, round(float(value), 4)))


def _require(payload: dict[str, Any], key: str, event: StoryEvent) -> Any:
    if key not in payload:
        raise WorldCorruptedError(f"event {event.world_id}#{event.sequence} ({event.kind}) is missing '{key}'")
    return payload[key]


def _apply_entity_created(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    record = EntityRecord.from_dict(_require(event.payload, "entity", event))
    if record.entity_id in projection.entities:
        raise WorldCorruptedError(f"event {event.world_id}#{event.sequence} recreates entity {record.entity_id}")
    projection.entities[record.entity_id] = record
    return AppliedChange(entities={record.entity_id})


def _apply_entity_mutated(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    entity_id = EntityId.parse(_require(event.payload, "entity_id", event))
    record = projection.entities.get(entity_id)
    if record is None:
        raise WorldCorruptedError(f"event {event.world_id}#{event.sequence} mutates unknown entity {entity_id}")
    for key, value in dict(_require(event.payload, "changes", event)).items():
        if value is None:
            record.attributes.pop(key, None)
        else:
            record.attributes[key] = copy.deepcopy(value)
    return AppliedChange(entities={entity_id})


def _apply_relationship_changed(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    source = EntityId.parse(_require(event.payload, "source", event))
    target = EntityId.parse(_require(event.payload, "target", event))
    relation = str(event.payload.get("relation") or "regard")
    for entity_id in (source, target):
        if entity_id not in projection.entities:
            raise WorldCorruptedError(
                f"event {event.world_id}#{event.sequence} links unknown entity {entity_id}"
            )
    edge = Relationship(
        source=source,
        target=target,
        relation=relation,
        sentiment=clamp_sentiment(_require(event.payload, "sentiment", event)),
    )
    projection.relationships[edge.key] = edge
    return AppliedChange(relationships={edge.key})


def _apply_item_granted(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    item_id = EntityId.parse(_require(event.payload, "item_id", event))
    recipient = str(_require(event.payload, "recipient", event))
    record = projection.entities.get(item_id)
    if record is None:
        attributes: dict[str, Any] = {"name": str(event.payload.get("item_name") or item_id), "status": "intact"}
        description = event.payload.get("description")
        if description:
            attributes["description"] = str(description)
        record = EntityRecord(entity_id=item_id, kind="item", attributes=attributes)
        projection.entities[item_id] = record
    record.attributes["owner"] = recipient
    return AppliedChange(entities={item_id})


def _no_effect(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    _ = (projection, event)
    return AppliedChange()


_APPLIERS = {
    ENTITY_CREATED: _apply_entity_created,
    ENTITY_MUTATED: _apply_entity_mutated,
    RELATIONSHIP_CHANGED: _apply_relationship_changed,
    ITEM_GRANTED: _apply_item_granted,
    DIALOGUE: _no_effect,
    CHOICE_SUGGESTED: _no_effect,
    INFO_REVEALED: _no_effect,
    EVENT_TRIGGERED: _no_effect,
}


def apply_event(projection: WorldProjection, event: StoryEvent) -> AppliedChange:
    """Applies one logged event in place and returns what it touched."""

    if event.world_id != projection.world_id:
        raise WorldCorruptedError(f"event for world {event.world_id} applied to {projection.world_id}")
    if event.sequence != projection.sequence + 1:
        raise WorldCorruptedError(
            f"world {projection.world_id} expected sequence {projection.sequence + 1}, got {event.sequence}"
        )
    if event.kind not in LOGGED_EVENT_KINDS:
        raise WorldCorruptedError(f"unknown event kind '{event.kind}' at {event.world_id}#{event.sequence}")
    applier = _APPLIERS[event.kind]
    try:
        change = applier(projection, event)
    except (KeyError, TypeError, ValueError) as exc:
        raise WorldCorruptedError(f"malformed event {event.world_id}#{event.sequence}: {exc}") from exc
    projection.sequence = event.sequence
    return change


def replay(world_id: str, events: Iterable[StoryEvent]) -> WorldProjection:
    projection = WorldProjection(world_id=world_id)
    for event in events:
        apply_event(projection, event)
    return projection


def projection_hash(projection: WorldProjection) -> str:
    return payload_hash(projection.to_dict())
