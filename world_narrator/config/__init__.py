"""Configuration loading and schema."""

from world_narrator.config.loader import load_config
from world_narrator.config.schema import AppConfig, AppConfigRoot

__all__ = ["AppConfig", "AppConfigRoot", "load_config"]
