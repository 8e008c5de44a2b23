"""Translates narrative actions into logged events and applies them atomically.

Planning runs against a working copy of the projection so that every draft
is checked with the same rules replay uses. The commit appends the drafts,
advances the world sequence by compare-and-set and rewrites the touched
cache rows in one transaction; a concurrent writer surfaces as
:class:`ConflictError` and the whole turn is re-planned against fresh state.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable

from loguru import logger

from world_narrator.domain.actions import (
    ChangeRelationshipArgs,
    DialogueAction,
    GiveItemArgs,
    NarrativeAction,
    RevealInfoArgs,
    SuggestedChoiceAction,
    ToolInvocationAction,
    TriggerEventArgs,
    WorldMutationAction,
)
from world_narrator.domain.errors import ConflictError, InvalidActionError, WorldCorruptedError
from world_narrator.domain.events import (
    CHOICE_SUGGESTED,
    DIALOGUE,
    ENTITY_CREATED,
    ENTITY_MUTATED,
    EVENT_TRIGGERED,
    INFO_REVEALED,
    ITEM_GRANTED,
    RELATIONSHIP_CHANGED,
    EventDraft,
    StoryEvent,
    utc_now,
)
from world_narrator.domain.ids import EntityId
from world_narrator.domain.projection import (
    AppliedChange,
    EntityRecord,
    WorldProjection,
    apply_event,
    clamp_sentiment,
    replay,
)
from world_narrator.narrative.contract import NARRATOR
from world_narrator.storage.store import SQLAlchemyWorldStore

DEFAULT_RELATION = "regard"

Planner = Callable[[WorldProjection], list[EventDraft]]


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "item"


def _resolve_entity(working: WorldProjection, raw: str, field_name: str) -> EntityId:
    try:
        entity_id = EntityId.parse(raw)
    except ValueError as exc:
        raise InvalidActionError(f"{field_name}: invalid entity id {raw!r}") from exc
    if entity_id not in working.entities:
        raise InvalidActionError(f"{field_name}: unknown entity '{entity_id}'")
    return entity_id


def _item_id_for(working: WorldProjection, item_name: str) -> EntityId:
    wanted = item_name.strip().lower()
    for entity_id in sorted(working.entities):
        record = working.entities[entity_id]
        if record.kind == "item" and str(record.attributes.get("name", "")).strip().lower() == wanted:
            return entity_id

    base = f"item-{_slug(item_name)}"[:120]
    candidate = EntityId(base)
    suffix = 2
    while candidate in working.entities:
        candidate = EntityId(f"{base}-{suffix}")
        suffix += 1
    return candidate


def _drafts_for_tool(
    action: ToolInvocationAction,
    working: WorldProjection,
    *,
    actor: EntityId,
) -> list[EventDraft]:
    logger.bind(world_id=working.world_id, phase="plan").debug("Tool invocation {}", action.describe())
    args = action.parsed_arguments()
    if isinstance(args, GiveItemArgs):
        recipient = _resolve_entity(working, args.recipient, "give_item.recipient") if args.recipient else actor
        item_id = _item_id_for(working, args.item_name)
        return [
            EventDraft(
                ITEM_GRANTED,
                {
                    "item_id": str(item_id),
                    "item_name": args.item_name,
                    "description": args.description,
                    "recipient": str(recipient),
                },
            )
        ]
    if isinstance(args, RevealInfoArgs):
        return [
            EventDraft(
                INFO_REVEALED,
                {"info_type": args.info_type, "content": args.content, "importance": args.importance},
            )
        ]
    if isinstance(args, ChangeRelationshipArgs):
        source = _resolve_entity(working, args.source, "change_relationship.source")
        target = _resolve_entity(working, args.target, "change_relationship.target")
        if source == target:
            raise InvalidActionError("change_relationship: source and target must differ")
        current = working.relationships.get((source, target, DEFAULT_RELATION))
        before = current.sentiment if current is not None else 0.0
        return [
            EventDraft(
                RELATIONSHIP_CHANGED,
                {
                    "source": str(source),
                    "target": str(target),
                    "relation": DEFAULT_RELATION,
                    "sentiment": clamp_sentiment(before + args.delta),
                    "delta": args.delta,
                    "reason": args.reason,
                },
            )
        ]
    if isinstance(args, TriggerEventArgs):
        return [EventDraft(EVENT_TRIGGERED, {"event_type": args.event_type, "description": args.description})]
    raise InvalidActionError(f"unsupported tool {action.tool}")


def _drafts_for_action(action: NarrativeAction, working: WorldProjection, *, actor: EntityId) -> list[EventDraft]:
    if isinstance(action, DialogueAction):
        if action.speaker != NARRATOR:
            _resolve_entity(working, action.speaker, "dialogue.speaker")
        return [
            EventDraft(
                DIALOGUE,
                {
                    "speaker": action.speaker,
                    "text": action.text,
                    "tone": action.tone,
                    "fallback": action.is_fallback,
                },
            )
        ]
    if isinstance(action, WorldMutationAction):
        entity_id = _resolve_entity(working, action.entity_id, "world_mutation.entity_id")
        return [
            EventDraft(
                ENTITY_MUTATED,
                {"entity_id": str(entity_id), "changes": dict(action.changes), "reason": action.reason},
            )
        ]
    if isinstance(action, SuggestedChoiceAction):
        return [EventDraft(CHOICE_SUGGESTED, {"label": action.label, "description": action.description})]
    if isinstance(action, ToolInvocationAction):
        return _drafts_for_tool(action, working, actor=actor)
    raise InvalidActionError(f"unsupported action {type(action).__name__}")


def _simulate(working: WorldProjection, draft: EventDraft) -> None:
    probe = StoryEvent(
        world_id=working.world_id,
        sequence=working.sequence + 1,
        kind=draft.kind,
        payload=draft.payload,
        timestamp=utc_now(),
    )
    try:
        apply_event(working, probe)
    except WorldCorruptedError as exc:
        raise InvalidActionError(str(exc)) from exc


def plan_events(
    actions: Iterable[NarrativeAction],
    projection: WorldProjection,
    *,
    actor: str,
    turn_id: str,
) -> list[EventDraft]:
    """One draft per logical effect, in action order.

    Raises:
        InvalidActionError: an action references an entity that does not
            exist at the point it would be applied.
    """

    working = projection.clone()
    actor_id = _resolve_entity(working, actor, "actor")
    drafts: list[EventDraft] = []
    for action in actions:
        for draft in _drafts_for_action(action, working, actor=actor_id):
            stamped = EventDraft(draft.kind, {**draft.payload, "turn_id": turn_id, "actor": str(actor_id)})
            _simulate(working, stamped)
            drafts.append(stamped)
    return drafts


def plan_seed(records: Iterable[EntityRecord], projection: WorldProjection) -> list[EventDraft]:
    working = projection.clone()
    drafts: list[EventDraft] = []
    for record in records:
        if record.entity_id in working.entities:
            raise InvalidActionError(f"entity '{record.entity_id}' already exists")
        draft = EventDraft(ENTITY_CREATED, {"entity": record.to_dict()})
        _simulate(working, draft)
        drafts.append(draft)
    return drafts


class WorldStateSynchronizer:
    def __init__(self, store: SQLAlchemyWorldStore, *, max_conflict_retries: int = 3, replay_page_size: int = 500):
        self.store = store
        self.max_conflict_retries = max_conflict_retries
        self.replay_page_size = replay_page_size

    async def get_world_snapshot(self, world_id: str) -> WorldProjection:
        return await self.store.get_world_snapshot(world_id)

    async def _commit(self, snapshot: WorldProjection, drafts: list[EventDraft]) -> list[StoryEvent]:
        touched = AppliedChange()
        async with self.store.begin_world_transaction(snapshot.world_id, snapshot.sequence) as tx:
            for draft in drafts:
                await tx.append_event(draft)
                touched.merge(apply_event(snapshot, tx.appended[-1]))
            for entity_id in sorted(touched.entities):
                await tx.write_entity(snapshot.entities[entity_id])
            for key in sorted(touched.relationships, key=lambda item: tuple(str(part) for part in item)):
                await tx.write_relationship(snapshot.relationships[key])
        return list(tx.appended)

    async def _apply_planned(self, world_id: str, planner: Planner, *, log_context: dict) -> list[StoryEvent]:
        log = logger.bind(world_id=world_id, phase="apply", **log_context)
        attempts = self.max_conflict_retries + 1
        attempt = 0
        while True:
            attempt += 1
            snapshot = await self.store.get_world_snapshot(world_id)
            drafts = planner(snapshot)
            if not drafts:
                return []
            try:
                events = await self._commit(snapshot, drafts)
            except ConflictError as exc:
                log.bind(attempt=f"{attempt}/{attempts}").warning(
                    "Sequence conflict expected={} actual={}",
                    exc.expected_sequence,
                    exc.actual_sequence,
                )
                if attempt >= attempts:
                    raise
                continue
            log.info("Committed events first={} last={}", events[0].sequence, events[-1].sequence)
            return events

    async def apply(
        self,
        world_id: str,
        actions: list[NarrativeAction],
        *,
        actor: str,
        turn_id: str,
    ) -> list[StoryEvent]:
        return await self._apply_planned(
            world_id,
            lambda snapshot: plan_events(actions, snapshot, actor=actor, turn_id=turn_id),
            log_context={"turn_id": turn_id},
        )

    async def seed(self, world_id: str, records: list[EntityRecord]) -> list[StoryEvent]:
        return await self._apply_planned(
            world_id,
            lambda snapshot: plan_seed(records, snapshot),
            log_context={"turn_id": "seed"},
        )

    async def replay_log(self, world_id: str) -> WorldProjection:
        events = await self.store.read_all_events(world_id, page_size=self.replay_page_size)
        return replay(world_id, events)

    async def rebuild(self, world_id: str) -> WorldProjection:
        """Recomputes the cached projection from the authoritative log."""

        projection = await self.replay_log(world_id)
        await self.store.replace_projection(projection)
        return projection
