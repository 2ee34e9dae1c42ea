from pathlib import Path

import pytest

from browser_session_hub.config import DEFAULT_MODEL, EngineConfig, load_config


def test_load_config_reads_env_file(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "BROWSER_SESSION_HUB_ENGINE__BACKEND=scripted",
                "BROWSER_SESSION_HUB_DATABASE__URL=sqlite+aiosqlite:///./env.db",
                "BROWSER_SESSION_HUB_ACTION_TIMEOUT=15",
            ]
        )
    )

    config = load_config(env_file=env_path)

    assert config.engine.backend == "scripted"
    assert config.database.url == "sqlite+aiosqlite:///./env.db"
    assert config.action_timeout == 15
    assert config.default_start_url == "https://example.com"


def test_load_config_prioritises_overrides(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "BROWSER_SESSION_HUB_ENGINE__BACKEND=scripted",
                "BROWSER_SESSION_HUB_DEFAULT_START_URL=https://env.example.com",
            ]
        )
    )

    config_path = tmp_path / "hub.yaml"
    config_path.write_text(
        "\n".join(
            [
                "engine:",
                "  headless: false",
                "  model_name: gpt-4o-mini",
                "server:",
                "  port: 9000",
            ]
        )
    )

    config = load_config(
        config_path,
        env_file=env_path,
        engine={"backend": "remote", "service_url": "http://engine:3001"},
    )

    assert config.engine.backend == "remote"
    assert config.engine.service_url == "http://engine:3001"
    assert config.engine.headless is False
    assert config.engine.model_name == "gpt-4o-mini"
    assert config.server.port == 9000
    assert config.default_start_url == "https://env.example.com"


def test_unsupported_model_falls_back_to_default() -> None:
    config = EngineConfig(model_name="some-unlisted-model")

    assert config.model_name == DEFAULT_MODEL


def test_resolve_api_key_prefers_explicit_value(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-openai")

    assert EngineConfig(api_key="configured").resolve_api_key() == "configured"
    assert EngineConfig().resolve_api_key() == "env-openai"


def test_resolve_api_key_falls_back_to_anthropic(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-anthropic")

    assert EngineConfig().resolve_api_key() == "env-anthropic"


def test_load_config_rejects_non_mapping_file(tmp_path: Path) -> None:
    config_path = tmp_path / "hub.yaml"
    config_path.write_text("- engine\n- server\n")

    with pytest.raises(ValueError, match="mapping"):
        load_config(config_path)


def test_load_config_merges_nested_overrides_without_mutating_them(tmp_path: Path) -> None:
    config_path = tmp_path / "hub.yaml"
    config_path.write_text("engine:\n  backend: scripted\n  headless: false\n")
    engine_override = {"model_name": "gpt-4o-mini"}

    config = load_config(config_path, engine=engine_override)

    assert config.engine.backend == "scripted"
    assert config.engine.headless is False
    assert config.engine.model_name == "gpt-4o-mini"
    assert engine_override == {"model_name": "gpt-4o-mini"}
