from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy import text

from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.entities import new_character, new_item, new_scene
from world_narrator.domain.errors import (
    ModelTimeoutError,
    UnknownWorldError,
    WorldCorruptedError,
    WorldFaultedError,
)
from world_narrator.domain.ids import EntityId
from world_narrator.llm.factory import Prompt
from world_narrator.narrative.service import build_engine
from world_narrator.narrative.state_machine import TurnPhase

_OPEN_DOOR = (
    '{"actions": ['
    '{"kind": "world_mutation", "entity_id": "door", "changes": {"status": "open"}, "reason": "hero pushed it"},'
    '{"kind": "dialogue", "speaker": "narrator", "text": "The oak door swings open onto the courtyard."}'
    "]}"
)


class _ScriptedAdapter:
    model_identifier = "fake/narrative/test"

    def __init__(self, outcomes: list[object]):
        self.outcomes = list(outcomes)
        self.prompts: list[Prompt] = []

    async def invoke(self, prompt: Prompt, timeout: float) -> str:
        _ = timeout
        self.prompts.append(prompt)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return str(outcome)


def _config(tmp_path: Path) -> AppConfigRoot:
    return AppConfigRoot.model_validate(
        {
            "llm": {
                "providers": {"fake": {"kind": "openai_compatible", "api_key_env": None}},
                "chat_endpoints": {
                    "narrative_default": {
                        "provider": "fake",
                        "model": "fake-chat",
                        "timeout_s": 1,
                        "retries": 2,
                        "backoff_base_s": 0,
                        "backoff_max_s": 0,
                    }
                },
                "routes": {"narrative_chat": "narrative_default"},
            },
            "storage": {"sqlite_path": str(tmp_path / "worlds.db")},
        }
    )


def _seed():
    return [
        new_character("hero", name="Ayla", location="hall"),
        new_scene("hall", name="Great Hall", description="Cold stone and banners"),
        new_item("door", name="Oak Door", location="hall", status="closed"),
        new_character("guard", name="Bram", location="hall"),
        new_item("key", name="Brass Key", owner="guard"),
    ]


async def _live(subscription) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await subscription.next(timeout=0.05)


def test_action_commits_events_and_streams_them_in_order(tmp_path: Path) -> None:
    async def _run() -> None:
        adapter = _ScriptedAdapter([_OPEN_DOOR])
        engine = await build_engine(_config(tmp_path), adapter=adapter)
        try:
            world = await engine.create_world("The Keep", world_id="w1", entities=_seed())
            assert world.sequence == 5

            subscription = await engine.subscribe("w1", cursor=5)
            result = await engine.submit_action("w1", "hero", "open the door")
            received = [await subscription.next(timeout=1) for _ in range(2)]
            snapshot = await engine.get_snapshot("w1")
            report = await engine.verify_projection("w1")
        finally:
            await engine.shutdown()

        assert result.status == "committed"
        assert [(event.sequence, event.kind) for event in result.events] == [(6, "entity_mutated"), (7, "dialogue")]
        assert [(envelope.sequence, envelope.kind) for envelope in received] == [
            (6, "entity_mutated"),
            (7, "dialogue"),
        ]
        assert received[0].payload["changes"] == {"status": "open"}
        assert snapshot.sequence == 7
        assert snapshot.get_entity("door").attributes["status"] == "open"
        assert report.consistent
        assert "open the door" in adapter.prompts[0].user

    asyncio.run(_run())


def test_model_timeouts_fail_turn_without_events(tmp_path: Path) -> None:
    async def _run() -> None:
        adapter = _ScriptedAdapter([ModelTimeoutError("slow")] * 3)
        engine = await build_engine(_config(tmp_path), adapter=adapter)
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            subscription = await engine.subscribe("w1", cursor=5)
            await _live(subscription)

            result = await engine.submit_action("w1", "hero", "open the door")
            notice = await subscription.next(timeout=1)
            world = await engine.store.get_world("w1")
            phase = engine.world_phase("w1")
        finally:
            await engine.shutdown()

        assert len(adapter.prompts) == 3
        assert result.status == "failed"
        assert result.failure_kind == "transient"
        assert world.sequence == 5
        assert phase is TurnPhase.IDLE
        assert notice.kind == "turn_failed"
        assert notice.sequence is None
        assert notice.payload["failure_kind"] == "transient"

    asyncio.run(_run())


def test_repeated_contract_violation_commits_single_fallback(tmp_path: Path) -> None:
    async def _run() -> None:
        adapter = _ScriptedAdapter(["The door opens.", '{"actions": [{"kind": "dialogue"}]}'])
        engine = await build_engine(_config(tmp_path), adapter=adapter)
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            result = await engine.submit_action("w1", "hero", "open the door")
            events = await engine.read_events("w1", after_sequence=5)
        finally:
            await engine.shutdown()

        assert len(adapter.prompts) == 2
        assert result.status == "degraded"
        assert result.low_confidence
        assert len(events) == 1
        assert events[0].sequence == 6
        assert events[0].kind == "dialogue"
        assert events[0].payload["speaker"] == "narrator"
        assert events[0].payload["fallback"] is True

    asyncio.run(_run())


def test_give_item_and_relationship_tools_update_projection(tmp_path: Path) -> None:
    reply = (
        '{"actions": ['
        '{"kind": "tool_invocation", "tool": "give_item",'
        ' "arguments": {"item_name": "Brass Key", "description": "Opens the cellar", "recipient": "hero"}},'
        '{"kind": "tool_invocation", "tool": "change_relationship",'
        ' "arguments": {"source": "guard", "target": "hero", "change": "improve",'
        ' "amount": "slight", "reason": "polite request"}},'
        '{"kind": "suggested_choice", "label": "Thank the guard"}'
        "]}"
    )

    async def _run() -> None:
        engine = await build_engine(_config(tmp_path), adapter=_ScriptedAdapter([reply]))
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            result = await engine.submit_action("w1", "hero", "ask the guard for the key")
            snapshot = await engine.get_snapshot("w1")
        finally:
            await engine.shutdown()

        assert [event.kind for event in result.events] == ["item_granted", "relationship_changed", "choice_suggested"]
        assert snapshot.get_entity("key").attributes["owner"] == "hero"
        assert snapshot.relationships[(EntityId("guard"), EntityId("hero"), "regard")].sentiment == 0.1

    asyncio.run(_run())


def test_verify_detects_drift_and_rebuild_repairs_it(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await build_engine(_config(tmp_path), adapter=_ScriptedAdapter([]))
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            drifted = await engine.get_snapshot("w1")
            drifted.get_entity("door").attributes["status"] = "ash"
            await engine.store.replace_projection(drifted)

            before = await engine.verify_projection("w1")
            await engine.rebuild_projection("w1")
            after = await engine.verify_projection("w1")
            snapshot = await engine.get_snapshot("w1")
        finally:
            await engine.shutdown()

        assert not before.consistent
        assert after.consistent
        assert snapshot.get_entity("door").attributes["status"] == "closed"

    asyncio.run(_run())


def test_unknown_world_is_reported(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await build_engine(_config(tmp_path), adapter=_ScriptedAdapter([]))
        try:
            with pytest.raises(UnknownWorldError):
                await engine.subscribe("missing")
            with pytest.raises(UnknownWorldError):
                await engine.submit_action("missing", "hero", "look around")
            worlds = await engine.list_worlds()
        finally:
            await engine.shutdown()

        assert worlds == []

    asyncio.run(_run())


async def _corrupt_cached_entity(engine, entity_id: str) -> None:
    async with engine.db.session_scope() as session:
        await session.execute(
            text("UPDATE entities SET attributes_json = '{broken' WHERE entity_id = :entity_id"),
            {"entity_id": entity_id},
        )


def test_unreadable_cache_row_faults_world_until_reset(tmp_path: Path) -> None:
    async def _run() -> None:
        adapter = _ScriptedAdapter([_OPEN_DOOR])
        engine = await build_engine(_config(tmp_path), adapter=adapter)
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            subscription = await engine.subscribe("w1", cursor=5)
            await _live(subscription)
            await _corrupt_cached_entity(engine, "door")

            failed = await engine.submit_action("w1", "hero", "open the door")
            notice = await subscription.next(timeout=1)
            faulted_phase = engine.world_phase("w1")
            with pytest.raises(WorldFaultedError):
                await engine.submit_action("w1", "hero", "open the door")

            await engine.reset_world("w1")
            report = await engine.verify_projection("w1")
            recovered = await engine.submit_action("w1", "hero", "open the door")
        finally:
            await engine.shutdown()

        assert failed.status == "failed"
        assert failed.failure_kind == "fatal"
        assert notice.kind == "turn_failed"
        assert notice.payload["failure_kind"] == "fatal"
        assert faulted_phase is TurnPhase.FAULTED
        assert report.consistent
        assert recovered.status == "committed"
        assert [event.sequence for event in recovered.events] == [6, 7]

    asyncio.run(_run())


def test_seeding_faults_on_corruption_and_is_refused_until_reset(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await build_engine(_config(tmp_path), adapter=_ScriptedAdapter([]))
        try:
            await engine.create_world("The Keep", world_id="w1", entities=_seed())
            await _corrupt_cached_entity(engine, "door")

            with pytest.raises(WorldCorruptedError):
                await engine.seed_entities("w1", [new_character("ghost", name="Wisp", location="hall")])
            phase = engine.world_phase("w1")
            with pytest.raises(WorldFaultedError):
                await engine.seed_entities("w1", [new_character("ghost", name="Wisp", location="hall")])
            world = await engine.store.get_world("w1")

            await engine.reset_world("w1")
            seeded = await engine.seed_entities("w1", [new_character("ghost", name="Wisp", location="hall")])
        finally:
            await engine.shutdown()

        assert phase is TurnPhase.FAULTED
        assert world.sequence == 5
        assert [event.sequence for event in seeded] == [6]

    asyncio.run(_run())
