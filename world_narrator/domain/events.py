from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

ENTITY_CREATED = "entity_created"
ENTITY_MUTATED = "entity_mutated"
RELATIONSHIP_CHANGED = "relationship_changed"
ITEM_GRANTED = "item_granted"
DIALOGUE = "dialogue"
CHOICE_SUGGESTED = "choice_suggested"
INFO_REVEALED = "info_revealed"
EVENT_TRIGGERED = "event_triggered"

# Ephemeral notice, never appended to a world log.
TURN_FAILED = "turn_failed"

STATE_EVENT_KINDS = frozenset({ENTITY_CREATED, ENTITY_MUTATED, RELATIONSHIP_CHANGED, ITEM_GRANTED})
NARRATIVE_EVENT_KINDS = frozenset({DIALOGUE, CHOICE_SUGGESTED, INFO_REVEALED, EVENT_TRIGGERED})
LOGGED_EVENT_KINDS = STATE_EVENT_KINDS | NARRATIVE_EVENT_KINDS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventDraft:
    """An event that has been planned but not yet assigned a sequence."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoryEvent:
    world_id: str
    sequence: int
    kind: str
    payload: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_id": self.world_id,
            "sequence": self.sequence,
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
