from world_narrator.narrative.prompts.correction import CORRECTION_PROMPT_VERSION, correction_prompt
from world_narrator.narrative.prompts.turn import TURN_PROMPT_VERSION, turn_prompt

__all__ = ["CORRECTION_PROMPT_VERSION", "TURN_PROMPT_VERSION", "correction_prompt", "turn_prompt"]
