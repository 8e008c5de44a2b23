from __future__ import annotations

from world_narrator.narrative.prompts.correction import correction_prompt
from world_narrator.narrative.state import TurnPipelineState


async def run(state: TurnPipelineState) -> dict:
    prompt = correction_prompt(
        original=state["base_prompt"],
        previous_output=state.get("raw_output", ""),
        errors=list(state.get("contract_errors", [])),
    )
    return {
        "prompt": prompt,
        "corrections_used": int(state.get("corrections_used", 0)) + 1,
    }
