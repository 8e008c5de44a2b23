"""World storage models and CRUD helpers."""

from world_narrator.storage.worlds.base import World
from world_narrator.storage.worlds import crud

__all__ = ["World", "crud"]
