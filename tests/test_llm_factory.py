from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

import world_narrator.llm.factory as llm_factory
from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.errors import ModelTimeoutError, ModelTransportError
from world_narrator.llm.factory import ChatModelAdapter, Prompt


class _FakeChatModel:
    def __init__(self, *, reply: str = "", delay: float = 0.0, error: Exception | None = None) -> None:
        self.reply = reply
        self.delay = delay
        self.error = error
        self.messages: list = []

    async def ainvoke(self, messages):
        self.messages.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=self.reply)


def _make_config(*, api_key_env: str | None = None, correction: bool = True) -> AppConfigRoot:
    endpoints = {
        "narrative_default": {"provider": "fake", "model": "fake-chat", "temperature": 0.7},
        "correction_strict": {"provider": "fake", "model": "fake-chat", "temperature": 0.1},
    }
    return AppConfigRoot.model_validate(
        {
            "llm": {
                "providers": {
                    "fake": {
                        "kind": "openai_compatible",
                        "base_url": "https://api.example.com/v1",
                        "api_key_env": api_key_env,
                    }
                },
                "chat_endpoints": endpoints,
                "routes": {
                    "narrative_chat": "narrative_default",
                    "correction_chat": "correction_strict" if correction else None,
                },
            }
        }
    )


def test_adapter_returns_stripped_reply(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeChatModel(reply='  {"actions": []}\n')
    monkeypatch.setattr(llm_factory, "_build_chat_model", lambda runtime: fake)
    adapter = ChatModelAdapter(_make_config())

    text = asyncio.run(adapter.invoke(Prompt(system="sys", user="usr"), timeout=1))

    assert text == '{"actions": []}'
    assert [message.content for message in fake.messages[0]] == ["sys", "usr"]
    assert adapter.model_identifier == "fake/narrative_default/fake-chat"


def test_adapter_routes_correction_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    runtimes = []

    def _build(runtime):
        runtimes.append(runtime)
        return _FakeChatModel(reply="ok")

    monkeypatch.setattr(llm_factory, "_build_chat_model", _build)

    asyncio.run(ChatModelAdapter(_make_config(), "correction").invoke(Prompt("s", "u"), timeout=1))
    asyncio.run(ChatModelAdapter(_make_config(correction=False), "correction").invoke(Prompt("s", "u"), timeout=1))

    assert [runtime.endpoint_name for runtime in runtimes] == ["correction_strict", "narrative_default"]
    assert runtimes[0].temperature == 0.1


def test_adapter_maps_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(llm_factory, "_build_chat_model", lambda runtime: _FakeChatModel(reply="late", delay=0.5))
    adapter = ChatModelAdapter(_make_config())

    with pytest.raises(ModelTimeoutError):
        asyncio.run(adapter.invoke(Prompt("s", "u"), timeout=0.01))


def test_adapter_maps_client_errors_and_empty_reply(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        llm_factory,
        "_build_chat_model",
        lambda runtime: _FakeChatModel(error=ConnectionError("connection reset")),
    )
    with pytest.raises(ModelTransportError) as exc_info:
        asyncio.run(ChatModelAdapter(_make_config()).invoke(Prompt("s", "u"), timeout=1))
    assert "ConnectionError" in str(exc_info.value)

    monkeypatch.setattr(llm_factory, "_build_chat_model", lambda runtime: _FakeChatModel(reply="   "))
    with pytest.raises(ModelTransportError):
        asyncio.run(ChatModelAdapter(_make_config()).invoke(Prompt("s", "u"), timeout=1))


def test_missing_api_key_is_reported_when_model_is_first_used(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WORLD_NARRATOR_TEST_KEY", raising=False)
    adapter = ChatModelAdapter(_make_config(api_key_env="WORLD_NARRATOR_TEST_KEY"))

    with pytest.raises(ValueError, match="WORLD_NARRATOR_TEST_KEY"):
        _ = adapter.model


def test_resolve_chat_runtime_reads_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORLD_NARRATOR_TEST_KEY", "sk-test")

    runtime = llm_factory.resolve_chat_runtime(_make_config(api_key_env="WORLD_NARRATOR_TEST_KEY"), "narrative")

    assert runtime.api_key == "sk-test"
    assert runtime.base_url == "https://api.example.com/v1"
    assert runtime.model_identifier == "fake/narrative_default/fake-chat"


def test_missing_api_key_surfaces_as_transport_error_on_invoke(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WORLD_NARRATOR_TEST_KEY", raising=False)
    adapter = ChatModelAdapter(_make_config(api_key_env="WORLD_NARRATOR_TEST_KEY"))

    with pytest.raises(ModelTransportError, match="WORLD_NARRATOR_TEST_KEY"):
        asyncio.run(adapter.invoke(Prompt("s", "u"), timeout=1))
