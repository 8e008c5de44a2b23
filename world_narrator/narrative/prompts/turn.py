from __future__ import annotations

from world_narrator.llm.factory import Prompt

TURN_PROMPT_VERSION = "v1"

ACTION_SCHEMA = (
    "{\n"
    '  "actions": [\n'
    '    {"kind": "dialogue", "speaker": "<entity id or narrator>", "text": "string", "tone": "optional string"},\n'
    '    {"kind": "world_mutation", "entity_id": "<entity id>", "changes": {"<attribute>": "scalar | list of strings | null"}, "reason": "string"},\n'
    '    {"kind": "suggested_choice", "label": "string", "description": "string"},\n'
    '    {"kind": "tool_invocation", "tool": "<tool name>", "arguments": {}}\n'
    "  ]\n"
    "}"
)

TOOLS_DESCRIPTION = (
    "- give_item: hand an item to a character (item_name: string, description: string, recipient: entity id, defaults to the actor)\n"
    '- reveal_info: reveal plot-relevant information (info_type: string, content: string, importance: "minor"|"major"|"critical")\n'
    '- change_relationship: shift how one character regards another (source: entity id, target: entity id, change: "improve"|"worsen", amount: "slight"|"moderate"|"significant", reason: string)\n'
    "- trigger_event: start a story event (event_type: string, description: string)\n"
)


def turn_prompt(
    *,
    language: str,
    style: str,
    max_actions: int,
    actor_id: str,
    world_state: str,
    known_entities: str,
    recent_events: str,
    player_input: str,
) -> Prompt:
    system = (
        "You are the narrator of a persistent interactive story world. "
        "You decide how the world responds to one player action at a time. "
        "Never contradict the world state you are given and only reference entities by the ids listed. "
        "Output strictly valid JSON only, with no markdown and no explanations."
    )

    user = (
        f"Language: {language}\n"
        f"Style: {style}\n"
        f"Acting character id: {actor_id}\n\n"
        "1) Referenced world state (hard constraints)\n"
        f"{world_state}\n\n"
        "2) Known entity ids\n"
        f"{known_entities}\n\n"
        "3) Recent events, oldest first\n"
        f"{recent_events}\n\n"
        "4) Player action\n"
        f"{player_input}\n\n"
        "Available tools:\n"
        f"{TOOLS_DESCRIPTION}\n"
        f"Respond with between 1 and {max_actions} actions. "
        "Use world_mutation to change attributes of existing entities, set an attribute to null to remove it. "
        "Use tool_invocation only when dramatically appropriate.\n\n"
        "Output JSON schema:\n"
        f"{ACTION_SCHEMA}\n"
    )
    return Prompt(system=system, user=user)
