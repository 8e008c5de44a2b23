from __future__ import annotations

from pathlib import Path
from typing import Any
import os
import re

import yaml
from loguru import logger

from world_narrator.config.schema import AppConfigRoot, resolve_paths

ENV_PREFIX = "WORLD_NARRATOR"

# Environment variable suffix -> dotted config path.
ENV_OVERRIDES: dict[str, str] = {
    "DATA_DIR": "app.data_dir",
    "LOG_LEVEL": "app.log_level",
    "DB": "storage.sqlite_path",
    "NARRATIVE_ROUTE": "llm.routes.narrative_chat",
    "CORRECTION_ROUTE": "llm.routes.correction_chat",
    "QUEUE_CAPACITY": "turns.queue_capacity",
    "SUBSCRIBER_QUEUE_SIZE": "broadcast.subscriber_queue_size",
}


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must hold a mapping: {path}")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _set_path(config_data: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = config_data
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[leaf] = value


def _load_dotenv(dotenv_path: Path) -> None:
    if not dotenv_path.exists():
        return
    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip("\"'"))


def provider_base_url_var(provider_name: str) -> str:
    normalized = re.sub(r"[^A-Za-z0-9]", "_", provider_name).upper()
    return f"{ENV_PREFIX}_LLM_PROVIDER_{normalized}_BASE_URL"


def _apply_env(config_data: dict[str, Any]) -> dict[str, Any]:
    for suffix, dotted in ENV_OVERRIDES.items():
        value = os.getenv(f"{ENV_PREFIX}_{suffix}")
        if value:
            _set_path(config_data, dotted, value)

    providers = (config_data.get("llm") or {}).get("providers") or {}
    for provider_name, provider_cfg in providers.items():
        if not isinstance(provider_cfg, dict):
            continue
        base_url = os.getenv(provider_base_url_var(provider_name))
        if base_url:
            provider_cfg["base_url"] = base_url
    return config_data


def load_config(
    config_path: Path | None = None,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
    base_dir: Path | None = None,
) -> AppConfigRoot:
    """Builds the runtime config.

    Layers are merged as ``configs/default.yaml``, then the profile, then
    ``config_path``, then ``overrides``; ``WORLD_NARRATOR_*`` variables
    (including ones from ``.env``) win over all of them.
    """

    base_dir = base_dir or Path.cwd()
    _load_dotenv(base_dir / ".env")

    layers: list[dict[str, Any]] = [_read_yaml(base_dir / "configs" / "default.yaml")]
    if profile:
        profile_path = base_dir / "configs" / "profiles" / f"{profile}.yaml"
        if not profile_path.exists():
            raise FileNotFoundError(f"Config profile not found: {profile_path}")
        layers.append(_read_yaml(profile_path))
    if config_path:
        layers.append(_read_yaml(config_path))
    if overrides:
        layers.append(overrides)

    config_data: dict[str, Any] = {}
    for layer in layers:
        config_data = _deep_merge(config_data, layer)

    config = resolve_paths(AppConfigRoot.model_validate(_apply_env(config_data)), base_dir)
    logger.debug(
        "Loaded config base_dir={} profile={} db={}", base_dir, profile or "-", config.storage.sqlite_path
    )
    return config


def masked_env_snapshot(config: AppConfigRoot | None = None) -> dict[str, str | None]:
    snapshot: dict[str, str | None] = {
        f"{ENV_PREFIX}_{suffix}": os.getenv(f"{ENV_PREFIX}_{suffix}") for suffix in ENV_OVERRIDES
    }
    if config is None:
        return snapshot

    for provider_name, provider in config.llm.providers.items():
        override_var = provider_base_url_var(provider_name)
        snapshot[override_var] = os.getenv(override_var)
        if provider.api_key_env:
            snapshot[provider.api_key_env] = "***" if os.getenv(provider.api_key_env) else None
    return snapshot
