from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from langgraph.graph import END, START, StateGraph
from loguru import logger

from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.actions import NarrativeAction
from world_narrator.domain.projection import WorldProjection
from world_narrator.narrative.invoker import ModelInvoker
from world_narrator.narrative.nodes import (
    context_build,
    contract_parse,
    correction_prompt,
    fallback_action,
    model_generate,
)
from world_narrator.narrative.nodes.context_build import RecentEventSource
from world_narrator.narrative.state import TurnPipelineState

MAX_CORRECTIONS = 1


@dataclass(frozen=True)
class PipelineResult:
    actions: list[NarrativeAction]
    degraded: bool
    model_calls: int
    prompt_fingerprint: str


def _route_after_parse(state: TurnPipelineState) -> Literal["done", "correct", "fallback"]:
    if state.get("actions"):
        return "done"
    if int(state.get("corrections_used", 0)) < MAX_CORRECTIONS:
        return "correct"
    return "fallback"


def build_turn_graph(
    *,
    config: AppConfigRoot,
    store: RecentEventSource,
    invoker: ModelInvoker,
    correction_invoker: ModelInvoker | None = None,
):
    workflow = StateGraph(TurnPipelineState)

    async def _context_build(state: TurnPipelineState) -> dict:
        return await context_build.run(state, config=config, store=store)

    async def _model_generate(state: TurnPipelineState) -> dict:
        return await model_generate.run(state, invoker=invoker, correction_invoker=correction_invoker)

    async def _contract_parse(state: TurnPipelineState) -> dict:
        return await contract_parse.run(state, config=config)

    async def _correction_prompt(state: TurnPipelineState) -> dict:
        return await correction_prompt.run(state)

    async def _fallback_action(state: TurnPipelineState) -> dict:
        return await fallback_action.run(state)

    workflow.add_node("context_build", _context_build)
    workflow.add_node("model_generate", _model_generate)
    workflow.add_node("contract_parse", _contract_parse)
    workflow.add_node("correction_prompt", _correction_prompt)
    workflow.add_node("fallback_action", _fallback_action)

    workflow.add_edge(START, "context_build")
    workflow.add_edge("context_build", "model_generate")
    workflow.add_edge("model_generate", "contract_parse")
    workflow.add_conditional_edges(
        "contract_parse",
        _route_after_parse,
        {"done": END, "correct": "correction_prompt", "fallback": "fallback_action"},
    )
    workflow.add_edge("correction_prompt", "model_generate")
    workflow.add_edge("fallback_action", END)

    return workflow.compile()


class PromptResponsePipeline:
    """Turns one player action into validated narrative actions.

    Model failures that survive the invoker's retries propagate as
    :class:`ModelUnavailableError` or :class:`CapacityError`. Contract
    violations never propagate: one corrective re-prompt is attempted and a
    second violation yields a single fallback dialogue.
    """

    def __init__(
        self,
        *,
        config: AppConfigRoot,
        store: RecentEventSource,
        invoker: ModelInvoker,
        correction_invoker: ModelInvoker | None = None,
    ):
        self.config = config
        self.graph = build_turn_graph(
            config=config,
            store=store,
            invoker=invoker,
            correction_invoker=correction_invoker,
        )

    async def run(
        self,
        *,
        world_id: str,
        turn_id: str,
        actor: str,
        input_text: str,
        snapshot: WorldProjection,
    ) -> PipelineResult:
        initial: TurnPipelineState = {
            "world_id": world_id,
            "turn_id": turn_id,
            "actor": actor,
            "input_text": input_text,
            "snapshot": snapshot,
        }
        final = await self.graph.ainvoke(initial)
        result = PipelineResult(
            actions=list(final.get("actions", [])),
            degraded=bool(final.get("degraded", False)),
            model_calls=int(final.get("model_calls", 0)),
            prompt_fingerprint=final["base_prompt"].fingerprint,
        )
        logger.bind(world_id=world_id, turn_id=turn_id, phase="pipeline").info(
            "Pipeline finished actions={} degraded={} model_calls={}",
            len(result.actions),
            result.degraded,
            result.model_calls,
        )
        return result
