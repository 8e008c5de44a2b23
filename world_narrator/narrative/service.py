from __future__ import annotations

from loguru import logger

from world_narrator.broadcast.hub import BroadcastHub
from world_narrator.config.schema import AppConfigRoot
from world_narrator.llm.factory import ChatModelAdapter, ChatRoute
from world_narrator.llm.pool import InferencePool
from world_narrator.narrative.engine import NarrativeEngine
from world_narrator.narrative.invoker import ModelAdapter, ModelInvoker
from world_narrator.narrative.pipeline import PromptResponsePipeline
from world_narrator.narrative.synchronizer import WorldStateSynchronizer
from world_narrator.storage.db import DatabaseService, init_db_service
from world_narrator.storage.store import SQLAlchemyWorldStore


def _build_invoker(
    config: AppConfigRoot,
    adapter: ModelAdapter,
    pool: InferencePool,
    route: ChatRoute,
) -> ModelInvoker:
    _, endpoint, _ = config.llm.resolve_chat_route(route)
    return ModelInvoker(
        adapter,
        pool,
        timeout_s=endpoint.timeout_s,
        retries=endpoint.retries,
        backoff_base_s=endpoint.backoff_base_s,
        backoff_max_s=endpoint.backoff_max_s,
        log_retry_attempts=config.observability.log_retry_attempts,
    )


async def build_engine(
    config: AppConfigRoot,
    *,
    adapter: ModelAdapter | None = None,
    correction_adapter: ModelAdapter | None = None,
    db: DatabaseService | None = None,
) -> NarrativeEngine:
    """Wires storage, the model pool, the pipeline and the hub into an engine.

    Adapters default to OpenAI compatible chat models resolved from
    ``llm.routes``. The correction route falls back to the narrative adapter
    when it is not configured.
    """

    db = db or await init_db_service(config.storage.sqlite_path)
    store = SQLAlchemyWorldStore(db)
    hub = BroadcastHub(
        store.read_events,
        queue_size=config.broadcast.subscriber_queue_size,
        replay_page_size=config.broadcast.replay_page_size,
    )

    _, narrative_endpoint, _ = config.llm.resolve_chat_route("narrative")
    pool = InferencePool(narrative_endpoint.max_concurrency, narrative_endpoint.pool_wait_timeout_s)

    injected = adapter is not None
    adapter = adapter or ChatModelAdapter(config, "narrative")
    invoker = _build_invoker(config, adapter, pool, "narrative")

    correction_invoker = None
    if correction_adapter is not None or config.llm.routes.correction_chat:
        if correction_adapter is None:
            correction_adapter = adapter if injected else ChatModelAdapter(config, "correction")
        correction_invoker = _build_invoker(config, correction_adapter, pool, "correction")

    pipeline = PromptResponsePipeline(
        config=config,
        store=store,
        invoker=invoker,
        correction_invoker=correction_invoker,
    )
    synchronizer = WorldStateSynchronizer(
        store,
        max_conflict_retries=config.turns.max_conflict_retries,
        replay_page_size=config.broadcast.replay_page_size,
    )
    logger.info(
        "Engine ready db={} pool={} narrative_route={} correction_route={}",
        config.storage.sqlite_path,
        pool.max_in_flight,
        config.llm.routes.narrative_chat,
        config.llm.routes.correction_chat or "-",
    )
    return NarrativeEngine(
        config=config,
        store=store,
        hub=hub,
        pipeline=pipeline,
        synchronizer=synchronizer,
        db=db,
    )
