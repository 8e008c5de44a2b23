from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import orjson

from world_narrator.domain.events import StoryEvent, utc_now


@dataclass(frozen=True)
class Envelope:
    """Wire shape of one delivered event.

    Ephemeral notices carry no sequence and are never replayed.
    """

    world_id: str
    sequence: int | None
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    ephemeral: bool = False

    @classmethod
    def from_event(cls, event: StoryEvent) -> "Envelope":
        return cls(
            world_id=event.world_id,
            sequence=event.sequence,
            kind=event.kind,
            payload=event.payload,
            timestamp=event.timestamp,
        )

    @classmethod
    def notice(cls, world_id: str, kind: str, payload: dict[str, Any]) -> "Envelope":
        return cls(world_id=world_id, sequence=None, kind=kind, payload=payload, ephemeral=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_id": self.world_id,
            "sequence": self.sequence,
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "ephemeral": self.ephemeral,
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict())
