from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

from loguru import logger

from world_narrator.broadcast.hub import BroadcastHub, Subscription
from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.events import StoryEvent
from world_narrator.domain.ids import WorldId
from world_narrator.domain.projection import EntityRecord, WorldProjection, projection_hash
from world_narrator.narrative.state_machine import (
    ActionSubmission,
    TurnPhase,
    TurnPipeline,
    TurnResult,
    WorldTurnMachine,
)
from world_narrator.narrative.synchronizer import WorldStateSynchronizer
from world_narrator.storage.db import DatabaseService
from world_narrator.storage.store import SQLAlchemyWorldStore
from world_narrator.storage.types import WorldRow


@dataclass(frozen=True)
class ProjectionReport:
    world_id: str
    sequence: int
    log_hash: str
    cache_hash: str

    @property
    def consistent(self) -> bool:
        return self.log_hash == self.cache_hash


class NarrativeEngine:
    """Entry point for worlds, turns and subscriptions."""

    def __init__(
        self,
        *,
        config: AppConfigRoot,
        store: SQLAlchemyWorldStore,
        hub: BroadcastHub,
        pipeline: TurnPipeline,
        synchronizer: WorldStateSynchronizer,
        db: DatabaseService | None = None,
    ):
        self.config = config
        self.store = store
        self.hub = hub
        self.pipeline = pipeline
        self.synchronizer = synchronizer
        self.db = db
        self._machines: dict[str, WorldTurnMachine] = {}

    def _machine(self, world_id: str) -> WorldTurnMachine:
        machine = self._machines.get(world_id)
        if machine is None:
            machine = WorldTurnMachine(
                world_id,
                pipeline=self.pipeline,
                synchronizer=self.synchronizer,
                hub=self.hub,
                queue_capacity=self.config.turns.queue_capacity,
                transition_history=self.config.turns.transition_history,
                max_input_chars=self.config.narrative.max_input_chars,
            )
            self._machines[world_id] = machine
        return machine

    async def create_world(
        self,
        title: str,
        *,
        world_id: str | None = None,
        entities: Iterable[EntityRecord] = (),
    ) -> WorldRow:
        world_id = str(WorldId(world_id)) if world_id else str(WorldId.new())
        await self.store.create_world(world_id, title)
        records = list(entities)
        if records:
            await self.seed_entities(world_id, records)
        return await self.store.get_world(world_id)

    async def seed_entities(self, world_id: str, records: list[EntityRecord]) -> list[StoryEvent]:
        machine = self._machine(world_id)
        async with machine.writing("seed"):
            events = await self.synchronizer.seed(world_id, records)
            self.hub.publish(world_id, events)
        return events

    def submit(self, submission: ActionSubmission) -> asyncio.Future[TurnResult]:
        return self._machine(submission.world_id).submit(submission)

    async def submit_action(self, world_id: str, actor: str, input_text: str) -> TurnResult:
        await self.store.get_world(world_id)
        return await self.submit(ActionSubmission(world_id=world_id, actor=actor, input_text=input_text))

    async def subscribe(self, world_id: str, cursor: int = 0) -> Subscription:
        await self.store.get_world(world_id)
        return self.hub.subscribe(world_id, cursor)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def world_phase(self, world_id: str) -> TurnPhase:
        machine = self._machines.get(world_id)
        return machine.phase if machine is not None else TurnPhase.IDLE

    async def reset_world(self, world_id: str) -> WorldProjection:
        return await self._machine(world_id).reset()

    async def get_snapshot(self, world_id: str) -> WorldProjection:
        return await self.store.get_world_snapshot(world_id)

    async def read_events(self, world_id: str, after_sequence: int = 0, limit: int | None = None) -> list[StoryEvent]:
        await self.store.get_world(world_id)
        return await self.store.read_events(world_id, after_sequence=after_sequence, limit=limit)

    async def list_worlds(self) -> list[WorldRow]:
        return await self.store.list_worlds()

    async def verify_projection(self, world_id: str) -> ProjectionReport:
        """Compares the cached projection with a fresh replay of the log."""

        machine = self._machine(world_id)
        async with machine.exclusive():
            replayed = await self.synchronizer.replay_log(world_id)
            cached = await self.store.get_world_snapshot(world_id)
        report = ProjectionReport(
            world_id=world_id,
            sequence=cached.sequence,
            log_hash=projection_hash(replayed),
            cache_hash=projection_hash(cached),
        )
        log = logger.bind(world_id=world_id)
        if report.consistent:
            log.info("Projection verified sequence={} hash={}", report.sequence, report.log_hash[:12])
        else:
            log.warning(
                "Projection drift sequence={} log_hash={} cache_hash={}",
                report.sequence,
                report.log_hash[:12],
                report.cache_hash[:12],
            )
        return report

    async def rebuild_projection(self, world_id: str) -> WorldProjection:
        machine = self._machine(world_id)
        if machine.faulted:
            return await machine.reset()
        async with machine.exclusive():
            return await self.synchronizer.rebuild(world_id)

    async def shutdown(self) -> None:
        for machine in list(self._machines.values()):
            await machine.shutdown()
        self._machines.clear()
        self.hub.close_all()
        if self.db is not None:
            await self.db.dispose()
