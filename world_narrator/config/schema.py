from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: Path = Field(default=Path("./data"))
    log_level: str = Field(default="INFO")


class LLMProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["openai_compatible", "ollama"] = "openai_compatible"
    base_url: str | None = None
    api_key_env: str | None = None


class ChatEndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    model: str
    temperature: float = 0.7
    timeout_s: float = 30.0
    retries: int = 2
    backoff_base_s: float = 0.5
    backoff_max_s: float = 4.0
    max_concurrency: int = 4
    pool_wait_timeout_s: float = 30.0
    max_tokens: int | None = None

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, value: float) -> float:
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("timeout_s", "pool_wait_timeout_s")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("endpoint timeouts must be positive")
        return value

    @field_validator("retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retries must be non-negative")
        return value

    @field_validator("backoff_base_s", "backoff_max_s")
    @classmethod
    def _non_negative_backoff(cls, value: float) -> float:
        if value < 0:
            raise ValueError("backoff settings must be non-negative")
        return value

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_concurrency must be positive")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _positive_optional_max_tokens(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("max_tokens must be positive when provided")
        return value

    @property
    def attempts(self) -> int:
        return self.retries + 1


class LLMRoutesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    narrative_chat: str = "narrative_default"
    correction_chat: str | None = None


class LLMConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: dict[str, LLMProviderConfig]
    chat_endpoints: dict[str, ChatEndpointConfig]
    routes: LLMRoutesConfig = LLMRoutesConfig()

    @model_validator(mode="after")
    def _validate_references(self) -> "LLMConfig":
        if not self.providers:
            raise ValueError("llm.providers cannot be empty")
        if not self.chat_endpoints:
            raise ValueError("llm.chat_endpoints cannot be empty")

        for endpoint_name, endpoint in self.chat_endpoints.items():
            if endpoint.provider not in self.providers:
                raise ValueError(
                    f"chat endpoint '{endpoint_name}' references unknown provider '{endpoint.provider}'"
                )

        if self.routes.narrative_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.narrative_chat not found: {self.routes.narrative_chat}")
        if self.routes.correction_chat and self.routes.correction_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.correction_chat not found: {self.routes.correction_chat}")
        return self

    def resolve_chat_route(
        self,
        route: Literal["narrative", "correction"],
    ) -> tuple[str, ChatEndpointConfig, LLMProviderConfig]:
        if route == "narrative":
            endpoint_name = self.routes.narrative_chat
        else:
            endpoint_name = self.routes.correction_chat or self.routes.narrative_chat

        endpoint = self.chat_endpoints[endpoint_name]
        provider = self.providers[endpoint.provider]
        return endpoint_name, endpoint, provider


class NarrativeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: str = "en"
    style: str = "vivid second-person interactive fiction, concise and grounded in the world state"
    recent_events_window: int = 20
    max_context_entities: int = 12
    max_known_entities: int = 60
    max_input_chars: int = 2000
    max_actions: int = 8

    @field_validator("recent_events_window", "max_context_entities", "max_known_entities", "max_input_chars", "max_actions")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("narrative integer config values must be positive")
        return value


class TurnsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    queue_capacity: int = 8
    max_conflict_retries: int = 3
    transition_history: int = 64

    @field_validator("queue_capacity", "transition_history")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("turn integer config values must be positive")
        return value

    @field_validator("max_conflict_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_conflict_retries must be non-negative")
        return value


class BroadcastConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subscriber_queue_size: int = 256
    replay_page_size: int = 500

    @field_validator("subscriber_queue_size", "replay_page_size")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("broadcast integer config values must be positive")
        return value


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sqlite_path: Path = Field(default=Path("./data/worlds.db"))


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_json_error_payload: bool = True
    json_error_payload_max_chars: int = 0
    log_retry_attempts: bool = True

    @field_validator("json_error_payload_max_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("json_error_payload_max_chars must be non-negative")
        return value


def default_llm_config() -> LLMConfig:
    return LLMConfig.model_validate(
        {
            "providers": {
                "default": {
                    "kind": "openai_compatible",
                    "base_url": None,
                    "api_key_env": "OPENAI_API_KEY",
                }
            },
            "chat_endpoints": {
                "narrative_default": {
                    "provider": "default",
                    "model": "gpt-4.1-mini",
                    "temperature": 0.7,
                    "timeout_s": 30,
                    "retries": 2,
                    "max_concurrency": 4,
                },
            },
            "routes": {
                "narrative_chat": "narrative_default",
            },
        }
    )


class AppConfigRoot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = AppConfig()
    llm: LLMConfig = Field(default_factory=default_llm_config)
    narrative: NarrativeConfig = NarrativeConfig()
    turns: TurnsConfig = TurnsConfig()
    broadcast: BroadcastConfig = BroadcastConfig()
    storage: StorageConfig = StorageConfig()
    observability: ObservabilityConfig = ObservabilityConfig()


def resolve_paths(config: AppConfigRoot, base_dir: Path) -> AppConfigRoot:
    def _resolve(path_value: Path) -> Path:
        return path_value if path_value.is_absolute() else (base_dir / path_value).resolve()

    config.app.data_dir = _resolve(config.app.data_dir)
    config.storage.sqlite_path = _resolve(config.storage.sqlite_path)
    return config
