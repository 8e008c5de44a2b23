"""Persistent world state: the event log plus its cached projection.

The ``story_events`` table is authoritative. The ``entities`` and
``relationships`` tables are a cache of the projection that is written in the
same transaction as the events that produced it and can be rebuilt from the
log at any time.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import orjson
from loguru import logger
from sqlalchemy.exc import IntegrityError

from world_narrator.domain.errors import ConflictError, InvalidActionError, UnknownWorldError, WorldCorruptedError
from world_narrator.domain.events import EventDraft, StoryEvent, utc_now
from world_narrator.domain.ids import EntityId
from world_narrator.domain.projection import EntityRecord, Relationship, WorldProjection
from world_narrator.storage.db import DatabaseService
from world_narrator.storage.repo import SQLAlchemyRepo
from world_narrator.storage.types import StoryEventRow, WorldRow


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_story_event(row: StoryEventRow) -> StoryEvent:
    try:
        payload = orjson.loads(row.payload_json)
    except orjson.JSONDecodeError as exc:
        raise WorldCorruptedError(f"event {row.world_id}#{row.sequence} has an unreadable payload") from exc
    return StoryEvent(
        world_id=row.world_id,
        sequence=row.sequence,
        kind=row.kind,
        payload=payload,
        timestamp=_as_utc(row.occurred_at),
    )


def _dump(value: object) -> str:
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS).decode("utf-8")


class WorldTransaction:
    """One atomic unit of appends and cache writes for a single world."""

    def __init__(self, repo: SQLAlchemyRepo, world_id: str, expected_sequence: int):
        self.repo = repo
        self.world_id = world_id
        self.expected_sequence = expected_sequence
        self.sequence = expected_sequence
        self.appended: list[StoryEvent] = []

    async def append_event(self, draft: EventDraft, *, occurred_at: datetime | None = None) -> int:
        advanced = await self.repo.advance_world_sequence(self.world_id, self.sequence)
        if not advanced:
            actual = await self.repo.get_world_sequence(self.world_id)
            if actual is None:
                raise UnknownWorldError(self.world_id)
            raise ConflictError(self.world_id, self.expected_sequence, actual)

        sequence = self.sequence + 1
        timestamp = occurred_at or utc_now()
        try:
            await self.repo.insert_story_event(
                world_id=self.world_id,
                sequence=sequence,
                kind=draft.kind,
                payload_json=_dump(draft.payload),
                occurred_at=timestamp,
            )
        except IntegrityError as exc:
            raise ConflictError(self.world_id, self.expected_sequence) from exc

        self.sequence = sequence
        self.appended.append(
            StoryEvent(
                world_id=self.world_id,
                sequence=sequence,
                kind=draft.kind,
                payload=draft.payload,
                timestamp=timestamp,
            )
        )
        return sequence

    async def write_entity(self, record: EntityRecord) -> None:
        await self.repo.upsert_entity_state(
            world_id=self.world_id,
            entity_id=str(record.entity_id),
            kind=record.kind,
            attributes_json=_dump(record.attributes),
            updated_sequence=self.sequence,
        )

    async def write_relationship(self, edge: Relationship) -> None:
        await self.repo.upsert_relationship_state(
            world_id=self.world_id,
            source_id=str(edge.source),
            target_id=str(edge.target),
            relation=edge.relation,
            sentiment=edge.sentiment,
            updated_sequence=self.sequence,
        )


class SQLAlchemyWorldStore:
    def __init__(self, db: DatabaseService):
        self.db = db

    async def create_world(self, world_id: str, title: str) -> WorldRow:
        async with self.db.session_scope() as session:
            repo = SQLAlchemyRepo(session)
            created = await repo.create_world(world_id, title)
            if not created:
                raise InvalidActionError(f"World {world_id} already exists")
            world = await repo.get_world(world_id)
        if world is None:
            raise UnknownWorldError(world_id)
        logger.bind(world_id=world_id).info("World created title={}", title)
        return world

    async def get_world(self, world_id: str) -> WorldRow:
        async with self.db.with_session() as session:
            world = await SQLAlchemyRepo(session).get_world(world_id)
        if world is None:
            raise UnknownWorldError(world_id)
        return world

    async def list_worlds(self) -> list[WorldRow]:
        async with self.db.with_session() as session:
            return await SQLAlchemyRepo(session).list_worlds()

    async def get_world_snapshot(self, world_id: str) -> WorldProjection:
        """Loads the cached projection together with the world's sequence."""

        async with self.db.with_session() as session:
            repo = SQLAlchemyRepo(session)
            sequence = await repo.get_world_sequence(world_id)
            if sequence is None:
                raise UnknownWorldError(world_id)
            entity_rows = await repo.list_entity_states(world_id)
            relationship_rows = await repo.list_relationship_states(world_id)

        projection = WorldProjection(world_id=world_id, sequence=sequence)
        try:
            for row in entity_rows:
                attributes = orjson.loads(row.attributes_json)
                if not isinstance(attributes, dict):
                    raise TypeError(f"attributes of {row.entity_id} are not an object")
                record = EntityRecord(entity_id=EntityId.parse(row.entity_id), kind=row.kind, attributes=attributes)
                projection.entities[record.entity_id] = record
            for row in relationship_rows:
                edge = Relationship(
                    source=EntityId.parse(row.source_id),
                    target=EntityId.parse(row.target_id),
                    relation=row.relation,
                    sentiment=row.sentiment,
                )
                projection.relationships[edge.key] = edge
        except (orjson.JSONDecodeError, TypeError, ValueError) as exc:
            raise WorldCorruptedError(f"world {world_id} has an unreadable projection cache: {exc}") from exc
        return projection

    @asynccontextmanager
    async def begin_world_transaction(self, world_id: str, expected_sequence: int) -> AsyncIterator[WorldTransaction]:
        """Yields a transaction that commits on exit and rolls back on any error.

        Appends fail with :class:`ConflictError` once another writer has moved
        the world past ``expected_sequence``.
        """

        async with self.db.session_scope() as session:
            yield WorldTransaction(SQLAlchemyRepo(session), world_id, expected_sequence)

    async def read_events(
        self,
        world_id: str,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[StoryEvent]:
        async with self.db.with_session() as session:
            rows = await SQLAlchemyRepo(session).list_story_events_after(world_id, after_sequence, limit)
        return [_to_story_event(row) for row in rows]

    async def recent_events(self, world_id: str, limit: int) -> list[StoryEvent]:
        async with self.db.with_session() as session:
            rows = await SQLAlchemyRepo(session).list_recent_story_events(world_id, limit)
        return [_to_story_event(row) for row in rows]

    async def read_all_events(self, world_id: str, page_size: int = 500) -> list[StoryEvent]:
        events: list[StoryEvent] = []
        cursor = 0
        while True:
            page = await self.read_events(world_id, after_sequence=cursor, limit=page_size)
            events.extend(page)
            if len(page) < page_size:
                return events
            cursor = page[-1].sequence

    async def replace_projection(self, projection: WorldProjection) -> None:
        """Overwrites the cached entity and relationship rows of one world."""

        async with self.db.session_scope() as session:
            repo = SQLAlchemyRepo(session)
            await repo.clear_world_state(projection.world_id)
            sequence = await repo.get_world_sequence(projection.world_id)
            if sequence is None:
                raise UnknownWorldError(projection.world_id)
            if sequence != projection.sequence:
                raise ConflictError(projection.world_id, projection.sequence, sequence)
            for record in projection.entities.values():
                await repo.upsert_entity_state(
                    world_id=projection.world_id,
                    entity_id=str(record.entity_id),
                    kind=record.kind,
                    attributes_json=_dump(record.attributes),
                    updated_sequence=projection.sequence,
                )
            for edge in projection.relationships.values():
                await repo.upsert_relationship_state(
                    world_id=projection.world_id,
                    source_id=str(edge.source),
                    target_id=str(edge.target),
                    relation=edge.relation,
                    sentiment=edge.sentiment,
                    updated_sequence=projection.sequence,
                )
        logger.bind(world_id=projection.world_id).info(
            "Projection cache replaced sequence={} entities={} relationships={}",
            projection.sequence,
            len(projection.entities),
            len(projection.relationships),
        )
