from __future__ import annotations

from sqlalchemy import select, update, text as sa_text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from world_narrator.storage.types import WorldRow
from world_narrator.storage.worlds.base import World


def _to_row(world: World) -> WorldRow:
    return WorldRow(
        world_id=str(world.id),
        title=str(world.title),
        sequence=int(world.sequence),
        created_at=world.created_at,
    )


async def create_world(session: AsyncSession, *, world_id: str, title: str) -> bool:
    stmt = (
        sqlite_insert(World)
        .values(id=world_id, title=title, sequence=0)
        .on_conflict_do_nothing(index_elements=[World.id])
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def get_world(session: AsyncSession, world_id: str) -> WorldRow | None:
    result = await session.execute(select(World).where(World.id == world_id))
    world = result.scalar_one_or_none()
    return _to_row(world) if world is not None else None


async def get_sequence(session: AsyncSession, world_id: str) -> int | None:
    result = await session.execute(select(World.sequence).where(World.id == world_id))
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


async def advance_sequence(session: AsyncSession, *, world_id: str, expected: int) -> bool:
    """Compare-and-set the world counter from ``expected`` to ``expected + 1``."""

    result = await session.execute(
        update(World)
        .where(World.id == world_id, World.sequence == expected)
        .values(sequence=expected + 1, updated_at=sa_text("CURRENT_TIMESTAMP"))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_worlds(session: AsyncSession) -> list[WorldRow]:
    result = await session.execute(select(World).order_by(World.created_at, World.id))
    return [_to_row(world) for world in result.scalars().all()]
