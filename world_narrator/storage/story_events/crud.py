from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from world_narrator.storage.story_events.base import StoryEventRecord
from world_narrator.storage.types import StoryEventRow

_COLUMNS = (
    StoryEventRecord.id,
    StoryEventRecord.world_id,
    StoryEventRecord.sequence,
    StoryEventRecord.kind,
    StoryEventRecord.payload_json,
    StoryEventRecord.occurred_at,
)


def _to_row(row: tuple) -> StoryEventRow:
    return StoryEventRow(
        id=int(row[0]),
        world_id=str(row[1]),
        sequence=int(row[2]),
        kind=str(row[3]),
        payload_json=str(row[4]),
        occurred_at=row[5],
    )


async def insert_event(
    session: AsyncSession,
    *,
    world_id: str,
    sequence: int,
    kind: str,
    payload_json: str,
    occurred_at: datetime,
) -> int:
    record = StoryEventRecord(
        world_id=world_id,
        sequence=sequence,
        kind=kind,
        payload_json=payload_json,
        occurred_at=occurred_at,
    )
    session.add(record)
    await session.flush()
    return int(record.id)


async def list_events_after(
    session: AsyncSession,
    *,
    world_id: str,
    after_sequence: int,
    limit: int | None = None,
) -> list[StoryEventRow]:
    stmt = (
        select(*_COLUMNS)
        .where(StoryEventRecord.world_id == world_id, StoryEventRecord.sequence > after_sequence)
        .order_by(StoryEventRecord.sequence.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return [_to_row(tuple(row)) for row in result.all()]


async def list_recent_events(session: AsyncSession, *, world_id: str, limit: int) -> list[StoryEventRow]:
    result = await session.execute(
        select(*_COLUMNS)
        .where(StoryEventRecord.world_id == world_id)
        .order_by(StoryEventRecord.sequence.desc())
        .limit(limit)
    )
    rows = [_to_row(tuple(row)) for row in result.all()]
    rows.reverse()
    return rows
