"""Validated construction of world entities."""

from __future__ import annotations

from typing import Any, Iterable, Literal

from world_narrator.domain.errors import EntityValidationError
from world_narrator.domain.ids import EntityId
from world_narrator.domain.projection import EntityRecord

EntityKind = Literal["character", "scene", "item"]
ENTITY_KINDS: tuple[str, ...] = ("character", "scene", "item")
RESERVED_ATTRIBUTES = frozenset({"id", "kind"})


def _entity_id(raw: EntityId | str) -> EntityId:
    if isinstance(raw, EntityId):
        return raw
    try:
        return EntityId.parse(raw)
    except ValueError as exc:
        raise EntityValidationError(str(exc)) from exc


def _require_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise EntityValidationError("entity name must be a non-empty string")
    return name.strip()


def _optional_text(field: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise EntityValidationError(f"{field} must be a non-empty string when provided")
    return value.strip()


def _traits(value: Iterable[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise EntityValidationError("traits must be a list of strings")
    traits: list[str] = []
    for trait in value:
        if not isinstance(trait, str) or not trait.strip():
            raise EntityValidationError("traits must be a list of non-empty strings")
        traits.append(trait.strip())
    return traits


def validate_attribute_value(key: str, value: Any) -> None:
    if key in RESERVED_ATTRIBUTES:
        raise EntityValidationError(f"attribute '{key}' is reserved")
    if key == "name":
        _require_name(value)
        return
    if key == "traits":
        _traits(value)
        return
    if value is None or isinstance(value, (str, int, float, bool)):
        return
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return
    raise EntityValidationError(f"attribute '{key}' must be a scalar or a list of strings")


def _build(kind: EntityKind, entity_id: EntityId | str, attributes: dict[str, Any]) -> EntityRecord:
    for key, value in attributes.items():
        validate_attribute_value(key, value)
    clean = {key: value for key, value in attributes.items() if value is not None}
    return EntityRecord(entity_id=_entity_id(entity_id), kind=kind, attributes=clean)


def new_character(
    entity_id: EntityId | str,
    *,
    name: str,
    traits: Iterable[str] | None = None,
    location: str | None = None,
    status: str = "active",
    **extra: Any,
) -> EntityRecord:
    attributes: dict[str, Any] = {
        "name": _require_name(name),
        "traits": _traits(traits),
        "location": _optional_text("location", location),
        "status": _optional_text("status", status) or "active",
    }
    attributes.update(extra)
    return _build("character", entity_id, attributes)


def new_scene(
    entity_id: EntityId | str,
    *,
    name: str,
    description: str | None = None,
    status: str = "active",
    **extra: Any,
) -> EntityRecord:
    attributes: dict[str, Any] = {
        "name": _require_name(name),
        "description": _optional_text("description", description),
        "status": _optional_text("status", status) or "active",
    }
    attributes.update(extra)
    return _build("scene", entity_id, attributes)


def new_item(
    entity_id: EntityId | str,
    *,
    name: str,
    description: str | None = None,
    owner: str | None = None,
    location: str | None = None,
    status: str = "intact",
    **extra: Any,
) -> EntityRecord:
    attributes: dict[str, Any] = {
        "name": _require_name(name),
        "description": _optional_text("description", description),
        "owner": _optional_text("owner", owner),
        "location": _optional_text("location", location),
        "status": _optional_text("status", status) or "intact",
    }
    attributes.update(extra)
    return _build("item", entity_id, attributes)


_BUILDERS = {
    "character": new_character,
    "scene": new_scene,
    "item": new_item,
}


def entity_from_mapping(data: dict[str, Any]) -> EntityRecord:
    """Builds an entity from a plain mapping such as a YAML seed file entry."""

    if not isinstance(data, dict):
        raise EntityValidationError("entity definition must be a mapping")
    kind = str(data.get("kind") or "").strip().lower()
    builder = _BUILDERS.get(kind)
    if builder is None:
        raise EntityValidationError(f"unknown entity kind: {kind or '-'}")
    if "id" not in data:
        raise EntityValidationError("entity definition requires an id")
    fields = {key: value for key, value in data.items() if key not in RESERVED_ATTRIBUTES}
    try:
        return builder(data["id"], **fields)
    except TypeError as exc:
        raise EntityValidationError(f"incomplete {kind} definition: {exc}") from exc
