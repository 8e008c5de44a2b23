from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class WorldRow:
    world_id: str
    title: str
    sequence: int
    created_at: datetime


@dataclass
class EntityStateRow:
    world_id: str
    entity_id: str
    kind: str
    attributes_json: str
    updated_sequence: int


@dataclass
class RelationshipRow:
    world_id: str
    source_id: str
    target_id: str
    relation: str
    sentiment: float
    updated_sequence: int


@dataclass
class StoryEventRow:
    id: int
    world_id: str
    sequence: int
    kind: str
    payload_json: str
    occurred_at: datetime
