"""Cached entity and relationship state derived from the event log."""

from world_narrator.storage.entities.base import EntityState, RelationshipState
from world_narrator.storage.entities import crud

__all__ = ["EntityState", "RelationshipState", "crud"]
