from world_narrator.narrative.nodes import (
    context_build,
    contract_parse,
    correction_prompt,
    fallback_action,
    model_generate,
)

__all__ = [
    "context_build",
    "contract_parse",
    "correction_prompt",
    "fallback_action",
    "model_generate",
]
