from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Mapping, Protocol

from loguru import logger

from world_narrator.domain.errors import ModelUnavailableError, TransientModelError
from world_narrator.llm.factory import Prompt
from world_narrator.llm.pool import InferencePool


class ModelAdapter(Protocol):
    async def invoke(self, prompt: Prompt, timeout: float) -> str: ...


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    return min(base_s * (2**attempt), max_s)


class ModelInvoker:
    """Calls the model adapter through the shared pool with bounded retries.

    Timeouts and transport errors are retried ``retries`` times with
    exponential backoff. A slot is held only while a call is in flight.
    :class:`CapacityError` from the pool is not retried.
    """

    def __init__(
        self,
        adapter: ModelAdapter,
        pool: InferencePool,
        *,
        timeout_s: float,
        retries: int,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 4.0,
        log_retry_attempts: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        model_identifier: str | None = None,
    ):
        self.adapter = adapter
        self.pool = pool
        self.timeout_s = timeout_s
        self.retries = max(0, retries)
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.log_retry_attempts = log_retry_attempts
        self._sleep = sleep
        self.model_identifier = model_identifier or getattr(adapter, "model_identifier", type(adapter).__name__)

    @property
    def attempts(self) -> int:
        return self.retries + 1

    async def generate(self, prompt: Prompt, *, context: Mapping[str, Any] | None = None) -> str:
        attempts = self.attempts
        last_exc: TransientModelError | None = None
        bound = {key: value for key, value in (context or {}).items() if value is not None}

        for attempt in range(attempts):
            log = logger.bind(**bound, model=self.model_identifier, attempt=f"{attempt + 1}/{attempts}")
            attempt_started = time.perf_counter()
            try:
                async with self.pool.slot():
                    text = await self.adapter.invoke(prompt, self.timeout_s)
            except TransientModelError as exc:
                last_exc = exc
                elapsed_ms = int((time.perf_counter() - attempt_started) * 1000)
                if self.log_retry_attempts:
                    log.warning(
                        "Model call failed elapsed_ms={} error_type={} error={}",
                        elapsed_ms,
                        type(exc).__name__,
                        exc,
                    )
                if attempt < attempts - 1:
                    await self._sleep(backoff_delay(attempt, self.backoff_base_s, self.backoff_max_s))
                continue

            elapsed_ms = int((time.perf_counter() - attempt_started) * 1000)
            log.debug("Model call succeeded elapsed_ms={} chars={} prompt={}", elapsed_ms, len(text), prompt.fingerprint)
            return text

        logger.bind(**bound, model=self.model_identifier).error(
            "Model unavailable after {} attempts last_error_type={}",
            attempts,
            type(last_exc).__name__ if last_exc else "-",
        )
        raise ModelUnavailableError(f"Model unavailable after {attempts} attempts: {last_exc}", attempts) from last_exc
