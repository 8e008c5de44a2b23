from __future__ import annotations

from loguru import logger

from world_narrator.domain.actions import fallback_dialogue
from world_narrator.narrative.state import TurnPipelineState


async def run(state: TurnPipelineState) -> dict:
    errors = list(state.get("contract_errors", []))
    logger.bind(node="fallback_action", world_id=state["world_id"], turn_id=state["turn_id"]).warning(
        "Model output unusable after correction, emitting fallback dialogue errors={}",
        errors[:5],
    )
    return {"actions": [fallback_dialogue()], "degraded": True}
