from __future__ import annotations

from world_narrator.narrative.invoker import ModelInvoker
from world_narrator.narrative.state import TurnPipelineState


async def run(
    state: TurnPipelineState,
    *,
    invoker: ModelInvoker,
    correction_invoker: ModelInvoker | None = None,
) -> dict:
    correcting = int(state.get("corrections_used", 0)) > 0
    active = correction_invoker if correcting and correction_invoker is not None else invoker
    raw_output = await active.generate(
        state["prompt"],
        context={
            "world_id": state["world_id"],
            "turn_id": state["turn_id"],
            "phase": "correction" if correcting else "generate",
        },
    )
    return {
        "raw_output": raw_output,
        "model_calls": int(state.get("model_calls", 0)) + 1,
    }
