from __future__ import annotations

import hashlib
from typing import Any

import orjson


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stable_json(payload: Any) -> str:
    return orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode("utf-8")


def payload_hash(payload: Any) -> str:
    return sha256_text(stable_json(payload))


def prompt_hash(system_prompt: str, user_prompt: str) -> str:
    return sha256_text(f"{system_prompt}::{user_prompt}")
