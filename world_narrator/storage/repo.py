from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from world_narrator.storage.entities import crud as entities_crud
from world_narrator.storage.story_events import crud as story_events_crud
from world_narrator.storage.types import EntityStateRow, RelationshipRow, StoryEventRow, WorldRow
from world_narrator.storage.worlds import crud as worlds_crud


class SQLAlchemyRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_world(self, world_id: str, title: str) -> bool:
        return await worlds_crud.create_world(self.session, world_id=world_id, title=title)

    async def get_world(self, world_id: str) -> WorldRow | None:
        return await worlds_crud.get_world(self.session, world_id)

    async def get_world_sequence(self, world_id: str) -> int | None:
        return await worlds_crud.get_sequence(self.session, world_id)

    async def advance_world_sequence(self, world_id: str, expected: int) -> bool:
        return await worlds_crud.advance_sequence(self.session, world_id=world_id, expected=expected)

    async def list_worlds(self) -> list[WorldRow]:
        return await worlds_crud.list_worlds(self.session)

    async def insert_story_event(
        self,
        *,
        world_id: str,
        sequence: int,
        kind: str,
        payload_json: str,
        occurred_at: datetime,
    ) -> int:
        return await story_events_crud.insert_event(
            self.session,
            world_id=world_id,
            sequence=sequence,
            kind=kind,
            payload_json=payload_json,
            occurred_at=occurred_at,
        )

    async def list_story_events_after(
        self,
        world_id: str,
        after_sequence: int,
        limit: int | None = None,
    ) -> list[StoryEventRow]:
        return await story_events_crud.list_events_after(
            self.session,
            world_id=world_id,
            after_sequence=after_sequence,
            limit=limit,
        )

    async def list_recent_story_events(self, world_id: str, limit: int) -> list[StoryEventRow]:
        return await story_events_crud.list_recent_events(self.session, world_id=world_id, limit=limit)

    async def upsert_entity_state(
        self,
        *,
        world_id: str,
        entity_id: str,
        kind: str,
        attributes_json: str,
        updated_sequence: int,
    ) -> None:
        await entities_crud.upsert_entity(
            self.session,
            world_id=world_id,
            entity_id=entity_id,
            kind=kind,
            attributes_json=attributes_json,
            updated_sequence=updated_sequence,
        )

    async def upsert_relationship_state(
        self,
        *,
        world_id: str,
        source_id: str,
        target_id: str,
        relation: str,
        sentiment: float,
        updated_sequence: int,
    ) -> None:
        await entities_crud.upsert_relationship(
            self.session,
            world_id=world_id,
            source_id=source_id,
            target_id=target_id,
            relation=relation,
            sentiment=sentiment,
            updated_sequence=updated_sequence,
        )

    async def list_entity_states(self, world_id: str) -> list[EntityStateRow]:
        return await entities_crud.list_entities(self.session, world_id)

    async def list_relationship_states(self, world_id: str) -> list[RelationshipRow]:
        return await entities_crud.list_relationships(self.session, world_id)

    async def clear_world_state(self, world_id: str) -> None:
        await entities_crud.clear_world_state(self.session, world_id)
