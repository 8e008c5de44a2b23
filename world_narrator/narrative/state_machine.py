"""Per-world turn lifecycle.

Each world owns one :class:`WorldTurnMachine` with a bounded FIFO queue and a
single worker task, so at most one turn per world is ever in flight::

    IDLE -> AWAITING_MODEL -> APPLYING_EFFECTS -> BROADCASTING -> IDLE
    IDLE -> IDLE                      (rejected input)
    any  -> FAULTED                   (corrupted log or storage failure)
    FAULTED -> IDLE                   (reset after the cache is rebuilt)
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Literal, Protocol

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from world_narrator.broadcast.hub import BroadcastHub
from world_narrator.domain.actions import NarrativeAction
from world_narrator.domain.errors import (
    CapacityError,
    ConflictError,
    InvalidActionError,
    ModelUnavailableError,
    UnknownWorldError,
    WorldCorruptedError,
    WorldFaultedError,
)
from world_narrator.domain.events import TURN_FAILED, StoryEvent, utc_now
from world_narrator.domain.ids import TurnId
from world_narrator.domain.projection import WorldProjection
from world_narrator.narrative.pipeline import PipelineResult

TurnStatus = Literal["committed", "degraded", "failed", "rejected"]
FailureKind = Literal["transient", "capacity", "conflict", "invalid", "fatal"]

FATAL_ERRORS: tuple[type[BaseException], ...] = (WorldCorruptedError, SQLAlchemyError)


class TurnPhase(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    APPLYING_EFFECTS = "applying_effects"
    BROADCASTING = "broadcasting"
    FAULTED = "faulted"


@dataclass(frozen=True)
class ActionSubmission:
    world_id: str
    actor: str
    input_text: str
    turn_id: str = field(default_factory=lambda: str(TurnId.new()))


@dataclass(frozen=True)
class TurnResult:
    world_id: str
    turn_id: str
    status: TurnStatus
    events: list[StoryEvent] = field(default_factory=list)
    failure_kind: FailureKind | None = None
    reason: str | None = None

    @property
    def low_confidence(self) -> bool:
        return self.status == "degraded"

    @property
    def succeeded(self) -> bool:
        return self.status in ("committed", "degraded")


@dataclass(frozen=True)
class Transition:
    source: TurnPhase
    target: TurnPhase
    reason: str
    turn_id: str | None
    at: datetime


class TurnPipeline(Protocol):
    async def run(
        self,
        *,
        world_id: str,
        turn_id: str,
        actor: str,
        input_text: str,
        snapshot: WorldProjection,
    ) -> PipelineResult: ...


class TurnSynchronizer(Protocol):
    async def get_world_snapshot(self, world_id: str) -> WorldProjection: ...

    async def apply(
        self,
        world_id: str,
        actions: list[NarrativeAction],
        *,
        actor: str,
        turn_id: str,
    ) -> list[StoryEvent]: ...

    async def rebuild(self, world_id: str) -> WorldProjection: ...


@dataclass
class _QueuedTurn:
    submission: ActionSubmission
    future: asyncio.Future[TurnResult]


class WorldTurnMachine:
    def __init__(
        self,
        world_id: str,
        *,
        pipeline: TurnPipeline,
        synchronizer: TurnSynchronizer,
        hub: BroadcastHub,
        queue_capacity: int = 8,
        transition_history: int = 64,
        max_input_chars: int = 2000,
    ):
        self.world_id = world_id
        self.pipeline = pipeline
        self.synchronizer = synchronizer
        self.hub = hub
        self.max_input_chars = max_input_chars
        self.transitions: deque[Transition] = deque(maxlen=transition_history)
        self._phase = TurnPhase.IDLE
        self._queue: asyncio.Queue[_QueuedTurn] = asyncio.Queue(maxsize=queue_capacity)
        self._worker: asyncio.Task[None] | None = None
        self._exclusive = asyncio.Lock()
        self._log = logger.bind(world_id=world_id)

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def faulted(self) -> bool:
        return self._phase is TurnPhase.FAULTED

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def _transition(self, target: TurnPhase, reason: str, turn_id: str | None = None) -> None:
        source = self._phase
        self._phase = target
        self.transitions.append(Transition(source=source, target=target, reason=reason, turn_id=turn_id, at=utc_now()))
        self._log.bind(turn_id=turn_id or "-", phase=target.value).debug(
            "Transition {} -> {} reason={}", source.value, target.value, reason
        )

    def _validate(self, submission: ActionSubmission) -> None:
        if submission.world_id != self.world_id:
            raise InvalidActionError(f"submission for world {submission.world_id} sent to {self.world_id}")
        if not submission.actor or not submission.actor.strip():
            raise InvalidActionError("actor must be a non-empty entity id")
        if not submission.input_text or not submission.input_text.strip():
            raise InvalidActionError("player input must not be empty")
        if len(submission.input_text) > self.max_input_chars:
            raise InvalidActionError(f"player input exceeds {self.max_input_chars} characters")

    def submit(self, submission: ActionSubmission) -> asyncio.Future[TurnResult]:
        """Queues one action; the returned future resolves when the turn ends.

        Once accepted the action runs even if the future is cancelled.

        Raises:
            WorldFaultedError: the world is quarantined until reset.
            CapacityError: the world's queue is full.
            InvalidActionError: the submission is malformed.
        """

        if self.faulted:
            raise WorldFaultedError(self.world_id)
        self._validate(submission)
        future: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(_QueuedTurn(submission=submission, future=future))
        except asyncio.QueueFull as exc:
            self._log.bind(turn_id=submission.turn_id).warning("Turn queue full capacity={}", self._queue.maxsize)
            raise CapacityError(f"World {self.world_id} already has {self._queue.maxsize} queued actions") from exc
        self._ensure_worker()
        return future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain(), name=f"world-turns-{self.world_id}")

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Holds the world's turn slot for work that must not interleave with a turn."""

        async with self._exclusive:
            yield

    @asynccontextmanager
    async def writing(self, label: str) -> AsyncIterator[None]:
        """Holds the turn slot for an out-of-turn write such as seeding.

        A fatal error raised inside the block faults the world the same way a
        turn would.

        Raises:
            WorldFaultedError: the world is quarantined until reset.
        """

        async with self._exclusive:
            if self.faulted:
                raise WorldFaultedError(self.world_id)
            try:
                yield
            except FATAL_ERRORS as exc:
                self._quarantine(exc, turn_id=label, actor=None)
                raise

    async def _drain(self) -> None:
        while True:
            queued = await self._queue.get()
            try:
                try:
                    async with self._exclusive:
                        if self.faulted:
                            raise WorldFaultedError(self.world_id)
                        result = await self._run_turn(queued.submission)
                except WorldFaultedError as exc:
                    if not queued.future.done():
                        queued.future.set_exception(exc)
                    continue
                except Exception as exc:  # noqa: BLE001
                    self._log.bind(turn_id=queued.submission.turn_id).exception("Turn crashed")
                    if self._phase is not TurnPhase.FAULTED:
                        self._transition(TurnPhase.IDLE, f"crashed: {type(exc).__name__}", queued.submission.turn_id)
                    if not queued.future.done():
                        queued.future.set_exception(exc)
                    continue
                if not queued.future.done():
                    queued.future.set_result(result)
            finally:
                self._queue.task_done()

    def _fail(self, submission: ActionSubmission, kind: FailureKind, exc: BaseException) -> TurnResult:
        reason = str(exc)
        self._log.bind(turn_id=submission.turn_id, phase=self._phase.value).warning(
            "Turn failed failure_kind={} error_type={} error={}", kind, type(exc).__name__, reason
        )
        self.hub.notify(
            self.world_id,
            TURN_FAILED,
            {"turn_id": submission.turn_id, "actor": submission.actor, "failure_kind": kind, "reason": reason},
        )
        self._transition(TurnPhase.IDLE, f"failed: {kind}", submission.turn_id)
        return TurnResult(
            world_id=self.world_id,
            turn_id=submission.turn_id,
            status="failed",
            failure_kind=kind,
            reason=reason,
        )

    def _reject(self, submission: ActionSubmission, reason: str) -> TurnResult:
        self._transition(TurnPhase.IDLE, f"rejected: {reason}", submission.turn_id)
        return TurnResult(
            world_id=self.world_id,
            turn_id=submission.turn_id,
            status="rejected",
            failure_kind="invalid",
            reason=reason,
        )

    def _quarantine(self, exc: BaseException, *, turn_id: str, actor: str | None) -> None:
        self._log.bind(turn_id=turn_id, phase=self._phase.value).opt(exception=exc).error(
            "World faulted error_type={} error={}", type(exc).__name__, exc
        )
        self._transition(TurnPhase.FAULTED, f"fatal: {type(exc).__name__}", turn_id)
        while not self._queue.empty():
            queued = self._queue.get_nowait()
            if not queued.future.done():
                queued.future.set_exception(WorldFaultedError(self.world_id))
            self._queue.task_done()
        self.hub.notify(
            self.world_id,
            TURN_FAILED,
            {"turn_id": turn_id, "actor": actor, "failure_kind": "fatal", "reason": str(exc)},
        )

    def _fault(self, submission: ActionSubmission, exc: BaseException) -> TurnResult:
        self._quarantine(exc, turn_id=submission.turn_id, actor=submission.actor)
        return TurnResult(
            world_id=self.world_id,
            turn_id=submission.turn_id,
            status="failed",
            failure_kind="fatal",
            reason=str(exc),
        )

    async def _run_turn(self, submission: ActionSubmission) -> TurnResult:
        turn_id = submission.turn_id
        log = self._log.bind(turn_id=turn_id)
        try:
            try:
                snapshot = await self.synchronizer.get_world_snapshot(self.world_id)
            except UnknownWorldError as exc:
                return self._reject(submission, str(exc))
            try:
                known_actor = snapshot.has_entity(submission.actor)
            except ValueError:
                known_actor = False
            if not known_actor:
                return self._reject(submission, f"unknown actor '{submission.actor}'")

            self._transition(TurnPhase.AWAITING_MODEL, "action accepted", turn_id)
            try:
                outcome = await self.pipeline.run(
                    world_id=self.world_id,
                    turn_id=turn_id,
                    actor=submission.actor.strip(),
                    input_text=submission.input_text,
                    snapshot=snapshot,
                )
            except ModelUnavailableError as exc:
                return self._fail(submission, "transient", exc)
            except CapacityError as exc:
                return self._fail(submission, "capacity", exc)

            self._transition(TurnPhase.APPLYING_EFFECTS, "actions parsed", turn_id)
            try:
                events = await self.synchronizer.apply(
                    self.world_id,
                    outcome.actions,
                    actor=submission.actor.strip(),
                    turn_id=turn_id,
                )
            except ConflictError as exc:
                return self._fail(submission, "conflict", exc)
            except InvalidActionError as exc:
                return self._fail(submission, "invalid", exc)

            self._transition(TurnPhase.BROADCASTING, "events committed", turn_id)
            self.hub.publish(self.world_id, events)
            self._transition(TurnPhase.IDLE, "turn complete", turn_id)
        except FATAL_ERRORS as exc:
            return self._fault(submission, exc)

        status: TurnStatus = "degraded" if outcome.degraded else "committed"
        log.info("Turn {} events={} model_calls={}", status, len(events), outcome.model_calls)
        return TurnResult(world_id=self.world_id, turn_id=turn_id, status=status, events=events)

    async def reset(self) -> WorldProjection:
        """Rebuilds the cached projection from the log and leaves FAULTED."""

        if not self.faulted:
            raise InvalidActionError(f"World {self.world_id} is not faulted")
        async with self._exclusive:
            projection = await self.synchronizer.rebuild(self.world_id)
            self._transition(TurnPhase.IDLE, "reset")
        self._log.info("World reset sequence={}", projection.sequence)
        return projection

    async def shutdown(self) -> None:
        while not self._queue.empty():
            queued = self._queue.get_nowait()
            queued.future.cancel()
            self._queue.task_done()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
