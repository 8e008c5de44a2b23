from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator, model_validator

from world_narrator.domain.entities import validate_attribute_value
from world_narrator.domain.errors import EntityValidationError

TOOL_NAMES: tuple[str, ...] = ("give_item", "reveal_info", "change_relationship", "trigger_event")

RELATIONSHIP_AMOUNTS: dict[str, float] = {
    "slight": 0.1,
    "moderate": 0.25,
    "significant": 0.5,
}


class GiveItemArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item_name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    recipient: str | None = None


class RevealInfoArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    info_type: str = Field(min_length=1)
    content: str = Field(min_length=1)
    importance: Literal["minor", "major", "critical"]


class ChangeRelationshipArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    change: Literal["improve", "worsen"]
    amount: Literal["slight", "moderate", "significant"]
    reason: str = Field(min_length=1)

    @property
    def delta(self) -> float:
        magnitude = RELATIONSHIP_AMOUNTS[self.amount]
        return magnitude if self.change == "improve" else -magnitude


class TriggerEventArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(min_length=1)
    description: str = Field(min_length=1)


TOOL_ARGUMENT_MODELS: dict[str, type[BaseModel]] = {
    "give_item": GiveItemArgs,
    "reveal_info": RevealInfoArgs,
    "change_relationship": ChangeRelationshipArgs,
    "trigger_event": TriggerEventArgs,
}


class DialogueAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["dialogue"] = "dialogue"
    speaker: str = Field(min_length=1)
    text: str = Field(min_length=1)
    tone: str | None = None
    _fallback: bool = PrivateAttr(default=False)

    @property
    def is_fallback(self) -> bool:
        return self._fallback


class WorldMutationAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["world_mutation"] = "world_mutation"
    entity_id: str = Field(min_length=1)
    changes: dict[str, Any] = Field(min_length=1)
    reason: str = ""

    @field_validator("changes")
    @classmethod
    def _validate_changes(cls, value: dict[str, Any]) -> dict[str, Any]:
        for key, item in value.items():
            if not key.strip():
                raise ValueError("attribute names must be non-empty")
            try:
                validate_attribute_value(key, item)
            except EntityValidationError as exc:
                raise ValueError(str(exc)) from exc
        return value


class SuggestedChoiceAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["suggested_choice"] = "suggested_choice"
    label: str = Field(min_length=1)
    description: str = ""


class ToolInvocationAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["tool_invocation"] = "tool_invocation"
    tool: Literal["give_item", "reveal_info", "change_relationship", "trigger_event"]
    arguments: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_arguments(self) -> "ToolInvocationAction":
        try:
            TOOL_ARGUMENT_MODELS[self.tool].model_validate(self.arguments)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or '-'}: {error['msg']}" for error in exc.errors()
            )
            raise ValueError(f"invalid arguments for {self.tool}: {problems}") from exc
        return self

    def parsed_arguments(self) -> BaseModel:
        return TOOL_ARGUMENT_MODELS[self.tool].model_validate(self.arguments)

    def describe(self) -> str:
        args = self.parsed_arguments()
        if isinstance(args, GiveItemArgs):
            return f"Give '{args.item_name}' to {args.recipient or 'the player'}"
        if isinstance(args, RevealInfoArgs):
            return f"Reveal {args.importance} {args.info_type}"
        if isinstance(args, ChangeRelationshipArgs):
            return f"{args.change.capitalize()} relationship {args.source}->{args.target} {args.amount}ly ({args.reason})"
        if isinstance(args, TriggerEventArgs):
            return f"Trigger {args.event_type} event"
        return f"Call {self.tool}"


NarrativeAction = Annotated[
    Union[DialogueAction, WorldMutationAction, SuggestedChoiceAction, ToolInvocationAction],
    Field(discriminator="kind"),
]


class NarrativeResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    actions: list[NarrativeAction] = Field(min_length=1)


def fallback_dialogue(reason: str = "") -> DialogueAction:
    text = "The story falters for a moment; the narrative could not proceed from that action."
    if reason:
        text = f"{text} ({reason})"
    action = DialogueAction(speaker="narrator", text=text, tone="apologetic")
    action._fallback = True
    return action
