from __future__ import annotations

import asyncio
from dataclasses import dataclass
import os
from typing import Any, Literal

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger

from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.errors import ModelTimeoutError, ModelTransportError
from world_narrator.domain.hashing import prompt_hash

ChatRoute = Literal["narrative", "correction"]


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str

    @property
    def fingerprint(self) -> str:
        return prompt_hash(self.system, self.user)[:12]


@dataclass(frozen=True)
class ResolvedChatRuntime:
    route: str
    endpoint_name: str
    provider_name: str
    model: str
    temperature: float
    timeout_s: float
    max_concurrency: int
    retries: int
    backoff_base_s: float
    backoff_max_s: float
    pool_wait_timeout_s: float
    max_tokens: int | None
    base_url: str | None
    api_key_env: str | None
    api_key: str | None

    @property
    def model_identifier(self) -> str:
        return f"{self.provider_name}/{self.endpoint_name}/{self.model}"


def resolve_chat_runtime(config: AppConfigRoot, route: ChatRoute) -> ResolvedChatRuntime:
    endpoint_name, endpoint, provider = config.llm.resolve_chat_route(route)
    api_key = None
    if provider.api_key_env:
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(
                f"Missing required API key env for route '{route}': {provider.api_key_env}"
            )

    return ResolvedChatRuntime(
        route=route,
        endpoint_name=endpoint_name,
        provider_name=endpoint.provider,
        model=endpoint.model,
        temperature=endpoint.temperature,
        timeout_s=endpoint.timeout_s,
        max_concurrency=endpoint.max_concurrency,
        retries=endpoint.retries,
        backoff_base_s=endpoint.backoff_base_s,
        backoff_max_s=endpoint.backoff_max_s,
        pool_wait_timeout_s=endpoint.pool_wait_timeout_s,
        max_tokens=endpoint.max_tokens,
        base_url=provider.base_url,
        api_key_env=provider.api_key_env,
        api_key=api_key,
    )


def _build_chat_model(runtime: ResolvedChatRuntime) -> ChatOpenAI:
    kwargs: dict[str, Any] = {
        "model": runtime.model,
        "temperature": runtime.temperature,
        "timeout": runtime.timeout_s,
        # Retries are owned by ModelInvoker.
        "max_retries": 0,
    }

    if runtime.max_tokens:
        kwargs["max_tokens"] = runtime.max_tokens
    if runtime.base_url:
        kwargs["base_url"] = runtime.base_url
    if runtime.api_key:
        kwargs["api_key"] = runtime.api_key

    return ChatOpenAI(**kwargs)


class ChatModelAdapter:
    """Single-shot chat call against an OpenAI compatible endpoint.

    ``invoke`` never retries: a call that outlives ``timeout`` is cancelled
    and surfaces as :class:`ModelTimeoutError`, anything else the client
    raises surfaces as :class:`ModelTransportError`.
    """

    def __init__(self, config: AppConfigRoot, route: ChatRoute = "narrative"):
        self.config = config
        self.route = route
        endpoint_name, endpoint, _ = config.llm.resolve_chat_route(route)
        self.model_identifier = f"{endpoint.provider}/{endpoint_name}/{endpoint.model}"
        self.runtime: ResolvedChatRuntime | None = None
        self._model: ChatOpenAI | None = None

    @property
    def model(self) -> ChatOpenAI:
        if self._model is None:
            self.runtime = resolve_chat_runtime(self.config, self.route)
            self._model = _build_chat_model(self.runtime)
        return self._model

    async def invoke(self, prompt: Prompt, timeout: float) -> str:
        try:
            model = self.model
        except ValueError as exc:
            raise ModelTransportError(f"{self.model_identifier}: {exc}") from exc
        messages = [SystemMessage(prompt.system), HumanMessage(prompt.user)]
        try:
            response = await asyncio.wait_for(model.ainvoke(messages), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ModelTimeoutError(f"{self.model_identifier} did not answer within {timeout}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.bind(route=self.route, model=self.model_identifier).debug(
                "Chat call raised error_type={} prompt={}", type(exc).__name__, prompt.fingerprint
            )
            raise ModelTransportError(f"{self.model_identifier}: {type(exc).__name__}: {exc}") from exc

        text = str(response.content).strip()
        if not text:
            raise ModelTransportError(f"{self.model_identifier} returned an empty response")
        return text
