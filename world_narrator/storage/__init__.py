"""Storage layer for SQLite via SQLAlchemy async."""

from world_narrator.storage import entities, story_events, worlds

__all__ = ["entities", "story_events", "worlds"]
