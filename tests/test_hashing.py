from __future__ import annotations

from world_narrator.domain.hashing import payload_hash, prompt_hash, sha256_text, stable_json


def test_sha256_text_deterministic() -> None:
    assert sha256_text("hello") == sha256_text("hello")
    assert sha256_text("hello") != sha256_text("world")
    assert len(sha256_text("hello")) == 64


def test_stable_json_ignores_key_order() -> None:
    assert stable_json({"b": 1, "a": [1, 2]}) == stable_json({"a": [1, 2], "b": 1})
    assert payload_hash({"b": 1, "a": 2}) == payload_hash({"a": 2, "b": 1})


def test_prompt_hash_depends_on_both_parts() -> None:
    assert prompt_hash("system", "user") != prompt_hash("system", "other")
    assert prompt_hash("system", "user") != prompt_hash("other", "user")
