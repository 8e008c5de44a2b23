from __future__ import annotations

from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from world_narrator.config.loader import load_config, masked_env_snapshot
from world_narrator.config.schema import AppConfigRoot, ChatEndpointConfig, LLMConfig, TurnsConfig, resolve_paths


def test_resolve_paths_makes_absolute(tmp_path: Path) -> None:
    config = AppConfigRoot()
    config.app.data_dir = Path("data")
    config.storage.sqlite_path = Path("data/worlds.db")

    resolved = resolve_paths(config, tmp_path)

    assert resolved.app.data_dir == (tmp_path / "data").resolve()
    assert resolved.storage.sqlite_path == (tmp_path / "data/worlds.db").resolve()


def test_chat_endpoint_validates_ranges() -> None:
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", temperature=2.5)
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", retries=-1)
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", timeout_s=0)
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", max_concurrency=0)


def test_chat_endpoint_attempts_include_first_call() -> None:
    endpoint = ChatEndpointConfig(provider="p", model="m", retries=2)

    assert endpoint.attempts == 3


def test_llm_config_validates_endpoint_provider_reference() -> None:
    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {
                    "p1": {"kind": "openai_compatible", "base_url": "https://x", "api_key_env": "KEY"},
                },
                "chat_endpoints": {
                    "narrative_default": {"provider": "missing_provider", "model": "m"},
                },
                "routes": {"narrative_chat": "narrative_default"},
            }
        )


def test_llm_config_validates_route_reference() -> None:
    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {"p1": {"kind": "openai_compatible"}},
                "chat_endpoints": {"narrative_default": {"provider": "p1", "model": "m"}},
                "routes": {"narrative_chat": "narrative_default", "correction_chat": "missing"},
            }
        )


def test_correction_route_falls_back_to_narrative_endpoint() -> None:
    config = AppConfigRoot()

    narrative_name, _, _ = config.llm.resolve_chat_route("narrative")
    correction_name, _, _ = config.llm.resolve_chat_route("correction")

    assert config.llm.routes.correction_chat is None
    assert correction_name == narrative_name == "narrative_default"


def test_turns_config_rejects_non_positive_queue() -> None:
    with pytest.raises(ValidationError):
        TurnsConfig(queue_capacity=0)
    with pytest.raises(ValidationError):
        TurnsConfig(max_conflict_retries=-1)


def test_unknown_sections_are_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"renderer": {"language": "en"}})


def test_load_config_merge_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs_dir = tmp_path / "configs"
    profiles_dir = configs_dir / "profiles"
    profiles_dir.mkdir(parents=True)

    (configs_dir / "default.yaml").write_text(
        textwrap.dedent(
            """
            app:
              data_dir: "./data-default"
              log_level: "INFO"
            llm:
              providers:
                openai:
                  kind: "openai_compatible"
                  base_url: "https://default-llm.example/v1"
                  api_key_env: "OPENAI_API_KEY"
              chat_endpoints:
                narrative_default:
                  provider: "openai"
                  model: "gpt-default"
                  retries: 2
              routes:
                narrative_chat: "narrative_default"
            turns:
              queue_capacity: 4
            """
        ).strip(),
        encoding="utf-8",
    )

    (profiles_dir / "fast.yaml").write_text(
        textwrap.dedent(
            """
            llm:
              chat_endpoints:
                narrative_default:
                  model: "gpt-profile"
            turns:
              queue_capacity: 6
            """
        ).strip(),
        encoding="utf-8",
    )

    (configs_dir / "custom.yaml").write_text(
        textwrap.dedent(
            """
            turns:
              queue_capacity: 10
            storage:
              sqlite_path: "./custom/worlds.db"
            """
        ).strip(),
        encoding="utf-8",
    )

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WORLD_NARRATOR_DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.setenv("WORLD_NARRATOR_LLM_PROVIDER_OPENAI_BASE_URL", "https://env-llm.example/v1")

    config = load_config(
        config_path=configs_dir / "custom.yaml",
        profile="fast",
        overrides={"turns": {"max_conflict_retries": 1}},
    )

    assert config.app.data_dir == (tmp_path / "env-data").resolve()
    assert config.storage.sqlite_path == (tmp_path / "custom/worlds.db").resolve()
    assert config.llm.chat_endpoints["narrative_default"].model == "gpt-profile"
    assert config.llm.chat_endpoints["narrative_default"].retries == 2
    assert config.llm.providers["openai"].base_url == "https://env-llm.example/v1"
    assert config.turns.queue_capacity == 10
    assert config.turns.max_conflict_retries == 1


def test_load_config_missing_profile_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(FileNotFoundError):
        load_config(profile="does-not-exist")


def test_masked_env_snapshot_hides_api_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
    config = AppConfigRoot()

    snapshot = masked_env_snapshot(config)

    assert snapshot["OPENAI_API_KEY"] == "***"
    assert "sk-secret" not in str(snapshot)


def test_observability_config_defaults_and_validation() -> None:
    config = AppConfigRoot()
    assert config.observability.log_json_error_payload is True
    assert config.observability.json_error_payload_max_chars == 0
    assert config.observability.log_retry_attempts is True

    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"observability": {"json_error_payload_max_chars": -1}})


def test_env_overrides_reach_storage_turns_and_routes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WORLD_NARRATOR_DB", "./env/worlds.db")
    monkeypatch.setenv("WORLD_NARRATOR_QUEUE_CAPACITY", "12")
    monkeypatch.setenv("WORLD_NARRATOR_LOG_LEVEL", "DEBUG")

    config = load_config(overrides={"turns": {"queue_capacity": 3}})
    snapshot = masked_env_snapshot(config)

    assert config.storage.sqlite_path == (tmp_path / "env/worlds.db").resolve()
    assert config.turns.queue_capacity == 12
    assert config.app.log_level == "DEBUG"
    assert snapshot["WORLD_NARRATOR_QUEUE_CAPACITY"] == "12"


def test_load_config_rejects_non_mapping_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "broken.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_config(config_path=config_path)
