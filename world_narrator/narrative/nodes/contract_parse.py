from __future__ import annotations

from loguru import logger

from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.errors import ContractViolationError
from world_narrator.domain.hashing import sha256_text
from world_narrator.narrative.contract import ensure_valid_actions
from world_narrator.narrative.state import TurnPipelineState
from world_narrator.utils.logging import truncate_payload


async def run(state: TurnPipelineState, *, config: AppConfigRoot) -> dict:
    raw_output = state.get("raw_output", "")
    try:
        actions = ensure_valid_actions(raw_output, state["snapshot"], max_actions=config.narrative.max_actions)
    except ContractViolationError as exc:
        log = logger.bind(node="contract_parse", world_id=state["world_id"], turn_id=state["turn_id"])
        log.warning(
            "Contract violation corrections_used={} errors={} raw_len={} raw_hash={}",
            state.get("corrections_used", 0),
            len(exc.errors),
            len(raw_output),
            sha256_text(raw_output)[:12],
        )
        if config.observability.log_json_error_payload:
            log.warning(
                "Contract violation raw_response={}",
                truncate_payload(raw_output, config.observability.json_error_payload_max_chars),
            )
        return {"actions": [], "contract_errors": exc.errors}
    return {"actions": actions, "contract_errors": []}
