from __future__ import annotations

from world_narrator.llm.factory import Prompt

CORRECTION_PROMPT_VERSION = "v1"


def correction_prompt(*, original: Prompt, previous_output: str, errors: list[str]) -> Prompt:
    problems = "\n".join(f"- {error}" for error in errors) or "- unknown problem"
    user = (
        f"{original.user}\n"
        "Your previous reply could not be used:\n"
        "<previous_reply>\n"
        f"{previous_output}\n"
        "</previous_reply>\n\n"
        "Problems found:\n"
        f"{problems}\n\n"
        "Reply again with a corrected JSON object that follows the schema exactly. "
        "Only reference entity ids from the known entity list.\n"
    )
    return Prompt(system=original.system, user=user)
