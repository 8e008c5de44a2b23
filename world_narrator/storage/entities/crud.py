from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from world_narrator.storage.entities.base import EntityState, RelationshipState
from world_narrator.storage.types import EntityStateRow, RelationshipRow


async def upsert_entity(
    session: AsyncSession,
    *,
    world_id: str,
    entity_id: str,
    kind: str,
    attributes_json: str,
    updated_sequence: int,
) -> None:
    stmt = (
        sqlite_insert(EntityState)
        .values(
            world_id=world_id,
            entity_id=entity_id,
            kind=kind,
            attributes_json=attributes_json,
            updated_sequence=updated_sequence,
        )
        .on_conflict_do_update(
            index_elements=[EntityState.world_id, EntityState.entity_id],
            set_={
                "kind": kind,
                "attributes_json": attributes_json,
                "updated_sequence": updated_sequence,
            },
        )
    )
    await session.execute(stmt)


async def upsert_relationship(
    session: AsyncSession,
    *,
    world_id: str,
    source_id: str,
    target_id: str,
    relation: str,
    sentiment: float,
    updated_sequence: int,
) -> None:
    stmt = (
        sqlite_insert(RelationshipState)
        .values(
            world_id=world_id,
            source_id=source_id,
            target_id=target_id,
            relation=relation,
            sentiment=sentiment,
            updated_sequence=updated_sequence,
        )
        .on_conflict_do_update(
            index_elements=[
                RelationshipState.world_id,
                RelationshipState.source_id,
                RelationshipState.target_id,
                RelationshipState.relation,
            ],
            set_={"sentiment": sentiment, "updated_sequence": updated_sequence},
        )
    )
    await session.execute(stmt)


async def list_entities(session: AsyncSession, world_id: str) -> list[EntityStateRow]:
    result = await session.execute(
        select(
            EntityState.world_id,
            EntityState.entity_id,
            EntityState.kind,
            EntityState.attributes_json,
            EntityState.updated_sequence,
        )
        .where(EntityState.world_id == world_id)
        .order_by(EntityState.entity_id)
    )
    return [
        EntityStateRow(
            world_id=str(row[0]),
            entity_id=str(row[1]),
            kind=str(row[2]),
            attributes_json=str(row[3]),
            updated_sequence=int(row[4]),
        )
        for row in result.all()
    ]


async def list_relationships(session: AsyncSession, world_id: str) -> list[RelationshipRow]:
    result = await session.execute(
        select(
            RelationshipState.world_id,
            RelationshipState.source_id,
            RelationshipState.target_id,
            RelationshipState.relation,
            RelationshipState.sentiment,
            RelationshipState.updated_sequence,
        )
        .where(RelationshipState.world_id == world_id)
        .order_by(RelationshipState.source_id, RelationshipState.target_id, RelationshipState.relation)
    )
    return [
        RelationshipRow(
            world_id=str(row[0]),
            source_id=str(row[1]),
            target_id=str(row[2]),
            relation=str(row[3]),
            sentiment=float(row[4]),
            updated_sequence=int(row[5]),
        )
        for row in result.all()
    ]


async def clear_world_state(session: AsyncSession, world_id: str) -> None:
    await session.execute(delete(RelationshipState).where(RelationshipState.world_id == world_id))
    await session.execute(delete(EntityState).where(EntityState.world_id == world_id))
