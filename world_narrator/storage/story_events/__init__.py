"""Append-only story event log."""

from world_narrator.storage.story_events.base import StoryEventRecord
from world_narrator.storage.story_events import crud

__all__ = ["StoryEventRecord", "crud"]
