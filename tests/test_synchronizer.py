from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from world_narrator.domain.actions import DialogueAction, ToolInvocationAction, WorldMutationAction
from world_narrator.domain.entities import new_character, new_item, new_scene
from world_narrator.domain.errors import ConflictError, InvalidActionError
from world_narrator.domain.events import DIALOGUE, EventDraft
from world_narrator.domain.ids import EntityId
from world_narrator.domain.projection import WorldProjection, projection_hash
from world_narrator.narrative.synchronizer import WorldStateSynchronizer, plan_events
from world_narrator.storage.db import init_db_service
from world_narrator.storage.store import SQLAlchemyWorldStore


class _RacingStore(SQLAlchemyWorldStore):
    """Lets another writer append right after each of the first ``races`` snapshot reads."""

    def __init__(self, db, races: int):
        super().__init__(db)
        self.races = races
        self.snapshot_reads = 0

    async def get_world_snapshot(self, world_id: str) -> WorldProjection:
        snapshot = await super().get_world_snapshot(world_id)
        self.snapshot_reads += 1
        if self.races > 0:
            self.races -= 1
            async with self.begin_world_transaction(world_id, snapshot.sequence) as tx:
                await tx.append_event(EventDraft(DIALOGUE, {"speaker": "narrator", "text": "meanwhile"}))
        return snapshot


def _seed_records():
    return [
        new_character("hero", name="Ayla", location="hall"),
        new_character("guard", name="Bram", location="hall"),
        new_scene("hall", name="Great Hall"),
        new_item("door", name="Oak Door", location="hall", status="closed"),
    ]


async def _open(tmp_path: Path, *, races: int = 0, max_conflict_retries: int = 3):
    db = await init_db_service(tmp_path / "worlds.db")
    store = _RacingStore(db, races=0)
    await store.create_world("w1", "Test World")
    synchronizer = WorldStateSynchronizer(store, max_conflict_retries=max_conflict_retries)
    await synchronizer.seed("w1", _seed_records())
    store.races = races
    store.snapshot_reads = 0
    return store, synchronizer


def test_seed_creates_entities_in_order(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path)
        try:
            events = await store.read_events("w1")
            snapshot = await synchronizer.get_world_snapshot("w1")
            with pytest.raises(InvalidActionError):
                await synchronizer.seed("w1", [new_scene("hall", name="Another Hall")])
        finally:
            await store.db.dispose()

        assert [event.sequence for event in events] == [1, 2, 3, 4]
        assert {event.kind for event in events} == {"entity_created"}
        assert snapshot.sequence == 4
        assert sorted(str(entity_id) for entity_id in snapshot.entities) == ["door", "guard", "hall", "hero"]

    asyncio.run(_run())


def test_apply_commits_events_and_cache(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path)
        actions = [
            WorldMutationAction(entity_id="door", changes={"status": "open"}, reason="pushed"),
            DialogueAction(speaker="narrator", text="The door swings open."),
        ]
        try:
            events = await synchronizer.apply("w1", actions, actor="hero", turn_id="t1")
            snapshot = await synchronizer.get_world_snapshot("w1")
            replayed = await synchronizer.replay_log("w1")
        finally:
            await store.db.dispose()

        assert [(event.sequence, event.kind) for event in events] == [(5, "entity_mutated"), (6, "dialogue")]
        assert events[0].payload["turn_id"] == "t1"
        assert events[0].payload["actor"] == "hero"
        assert snapshot.get_entity("door").attributes["status"] == "open"
        assert projection_hash(snapshot) == projection_hash(replayed)

    asyncio.run(_run())


def test_conflict_is_retried_against_fresh_state(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path, races=1)
        actions = [WorldMutationAction(entity_id="door", changes={"status": "open"})]
        try:
            events = await synchronizer.apply("w1", actions, actor="hero", turn_id="t1")
            all_events = await store.read_events("w1")
        finally:
            await store.db.dispose()

        assert store.snapshot_reads == 2
        assert [event.sequence for event in events] == [6]
        assert [event.sequence for event in all_events] == [1, 2, 3, 4, 5, 6]
        assert all_events[4].payload["text"] == "meanwhile"

    asyncio.run(_run())


def test_conflict_retries_are_bounded(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path, races=5, max_conflict_retries=1)
        actions = [DialogueAction(speaker="narrator", text="Never lands.")]
        try:
            with pytest.raises(ConflictError):
                await synchronizer.apply("w1", actions, actor="hero", turn_id="t1")
            all_events = await store.read_events("w1")
        finally:
            await store.db.dispose()

        assert store.snapshot_reads == 2
        assert all(event.payload.get("text") != "Never lands." for event in all_events)

    asyncio.run(_run())


def test_give_item_mints_then_reuses_item(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path)
        give = ToolInvocationAction(
            tool="give_item",
            arguments={"item_name": "Brass Lantern", "description": "Dented but working"},
        )
        give_again = ToolInvocationAction(
            tool="give_item",
            arguments={"item_name": "brass lantern", "description": "Same lantern", "recipient": "guard"},
        )
        try:
            first = await synchronizer.apply("w1", [give], actor="hero", turn_id="t1")
            second = await synchronizer.apply("w1", [give_again], actor="hero", turn_id="t2")
            snapshot = await synchronizer.get_world_snapshot("w1")
        finally:
            await store.db.dispose()

        assert first[0].payload["item_id"] == "item-brass-lantern"
        assert first[0].payload["recipient"] == "hero"
        assert second[0].payload["item_id"] == "item-brass-lantern"
        lantern = snapshot.get_entity("item-brass-lantern")
        assert lantern.kind == "item"
        assert lantern.attributes["owner"] == "guard"

    asyncio.run(_run())


def test_relationship_changes_accumulate(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path)
        improve = ToolInvocationAction(
            tool="change_relationship",
            arguments={
                "source": "guard",
                "target": "hero",
                "change": "improve",
                "amount": "moderate",
                "reason": "shared bread",
            },
        )
        try:
            await synchronizer.apply("w1", [improve], actor="hero", turn_id="t1")
            events = await synchronizer.apply("w1", [improve], actor="hero", turn_id="t2")
            snapshot = await synchronizer.get_world_snapshot("w1")
        finally:
            await store.db.dispose()

        assert events[0].payload["sentiment"] == 0.5
        edge = snapshot.relationships[(EntityId("guard"), EntityId("hero"), "regard")]
        assert edge.sentiment == 0.5

    asyncio.run(_run())


def test_plan_rejects_unknown_references_and_self_relationship() -> None:
    projection = WorldProjection(world_id="w1")
    for record in _seed_records():
        projection.entities[record.entity_id] = record

    with pytest.raises(InvalidActionError):
        plan_events(
            [WorldMutationAction(entity_id="window", changes={"status": "open"})],
            projection,
            actor="hero",
            turn_id="t1",
        )
    with pytest.raises(InvalidActionError):
        plan_events([DialogueAction(speaker="narrator", text="Hi")], projection, actor="nobody", turn_id="t1")
    with pytest.raises(InvalidActionError):
        plan_events(
            [
                ToolInvocationAction(
                    tool="change_relationship",
                    arguments={
                        "source": "hero",
                        "target": "hero",
                        "change": "worsen",
                        "amount": "slight",
                        "reason": "doubt",
                    },
                )
            ],
            projection,
            actor="hero",
            turn_id="t1",
        )


def test_rebuild_restores_cache_from_log(tmp_path: Path) -> None:
    async def _run() -> None:
        store, synchronizer = await _open(tmp_path)
        try:
            drifted = await synchronizer.get_world_snapshot("w1")
            drifted.entities.pop(EntityId("door"))
            await store.replace_projection(drifted)
            broken = await synchronizer.get_world_snapshot("w1")

            rebuilt = await synchronizer.rebuild("w1")
            restored = await synchronizer.get_world_snapshot("w1")
        finally:
            await store.db.dispose()

        assert not broken.has_entity("door")
        assert restored.has_entity("door")
        assert projection_hash(rebuilt) == projection_hash(restored)

    asyncio.run(_run())
