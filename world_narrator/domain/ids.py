from __future__ import annotations

from dataclasses import dataclass
import re
import uuid

_ENTITY_ID_PATTERN = re.compile(r"^\S{1,128}$")


def _new_hex() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, order=True)
class WorldId:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValueError("WorldId value must be a non-empty string")

    @classmethod
    def new(cls) -> "WorldId":
        return cls(_new_hex()[:12])

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class EntityId:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not _ENTITY_ID_PATTERN.match(self.value):
            raise ValueError(f"Invalid entity id: {self.value!r}")

    @classmethod
    def parse(cls, raw: object) -> "EntityId":
        return cls(str(raw).strip())

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class TurnId:
    value: str

    @classmethod
    def new(cls) -> "TurnId":
        return cls(_new_hex())

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class SubscriptionId:
    value: str

    @classmethod
    def new(cls) -> "SubscriptionId":
        return cls(_new_hex())

    def __str__(self) -> str:
        return self.value
