from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def import_all_models() -> None:
    from world_narrator.storage.entities.base import EntityState, RelationshipState
    from world_narrator.storage.story_events.base import StoryEventRecord
    from world_narrator.storage.worlds.base import World

    _ = (
        World,
        EntityState,
        RelationshipState,
        StoryEventRecord,
    )
