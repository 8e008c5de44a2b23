from __future__ import annotations

from typing import Any, NotRequired, TypedDict

from world_narrator.domain.projection import WorldProjection
from world_narrator.llm.factory import Prompt


class TurnPipelineState(TypedDict):
    # Inputs
    world_id: str
    turn_id: str
    actor: str
    input_text: str
    snapshot: WorldProjection

    # Node outputs
    base_prompt: NotRequired[Prompt]
    prompt: NotRequired[Prompt]
    context_entities: NotRequired[list[str]]
    recent_event_count: NotRequired[int]

    raw_output: NotRequired[str]
    actions: NotRequired[list[Any]]
    contract_errors: NotRequired[list[str]]
    corrections_used: NotRequired[int]
    degraded: NotRequired[bool]

    # Runtime report metrics
    model_calls: NotRequired[int]
