from __future__ import annotations

import pytest

from world_narrator.domain.entities import entity_from_mapping, new_character, new_item, new_scene
from world_narrator.domain.errors import EntityValidationError
from world_narrator.domain.ids import EntityId


def test_new_character_defaults_and_strips() -> None:
    record = new_character("hero", name="  Ayla ", traits=["brave", " curious "], location="hall")

    assert record.entity_id == EntityId("hero")
    assert record.kind == "character"
    assert record.attributes == {
        "name": "Ayla",
        "traits": ["brave", "curious"],
        "location": "hall",
        "status": "active",
    }


def test_optional_attributes_are_omitted_when_missing() -> None:
    scene = new_scene("hall", name="Great Hall")
    item = new_item("door", name="Oak Door", location="hall", status="closed")

    assert "description" not in scene.attributes
    assert item.attributes == {"name": "Oak Door", "location": "hall", "status": "closed"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": ""},
        {"name": "Ayla", "traits": "brave"},
        {"name": "Ayla", "traits": ["brave", ""]},
        {"name": "Ayla", "location": "  "},
        {"name": "Ayla", "mood": {"nested": True}},
    ],
)
def test_new_character_rejects_invalid_fields(kwargs: dict) -> None:
    with pytest.raises(EntityValidationError):
        new_character("hero", **kwargs)


def test_entity_id_rejects_whitespace() -> None:
    with pytest.raises(EntityValidationError):
        new_scene("great hall", name="Great Hall")


def test_entity_from_mapping_dispatches_on_kind() -> None:
    record = entity_from_mapping({"id": "key", "kind": "Item", "name": "Brass Key", "owner": "hero"})

    assert record.kind == "item"
    assert record.attributes["owner"] == "hero"
    assert record.name == "Brass Key"


def test_entity_from_mapping_rejects_unknown_kind_and_missing_id() -> None:
    with pytest.raises(EntityValidationError):
        entity_from_mapping({"id": "x", "kind": "vehicle", "name": "Cart"})
    with pytest.raises(EntityValidationError):
        entity_from_mapping({"kind": "scene", "name": "Hall"})
    with pytest.raises(EntityValidationError):
        entity_from_mapping({"id": "x", "kind": "scene"})
