import pytest
from pydantic import ValidationError

from conftest import FakePlatform

from chat_core.api.service import build_engine, validate_settings
from chat_core.config.settings import Settings
from chat_core.domain.exceptions import ConfigurationError
from chat_core.providers.glm_client import GlmClient


def test_short_api_key_is_rejected(make_settings):
    with pytest.raises(ValidationError):
        make_settings(openai_api_key="short")


def test_unknown_provider_is_rejected(make_settings):
    with pytest.raises(ValidationError):
        make_settings(default_provider="kimi")


def test_provider_name_is_normalized(make_settings):
    cfg = make_settings(default_provider=" GLM ", glm_api_key="glm-key-0123456789")
    assert cfg.default_provider == "glm"
    assert cfg.api_key_for("GLM") == "glm-key-0123456789"
    assert cfg.api_key_for("openai") is None


def test_missing_key_stops_startup(make_settings):
    with pytest.raises(ConfigurationError) as excinfo:
        validate_settings(make_settings())
    assert excinfo.value.code == "MISSING_API_KEY"
    assert excinfo.value.extra["provider"] == "openai"


def test_blank_key_counts_as_missing(make_settings):
    with pytest.raises(ConfigurationError):
        build_engine(FakePlatform(), make_settings(glm_api_key="          ", default_provider="glm"))


def test_build_engine_uses_configured_provider(make_settings):
    engine = build_engine(FakePlatform(), make_settings(default_provider="glm", glm_api_key="glm-key-0123456789"))
    assert isinstance(engine._provider_client, GlmClient)


def test_yaml_config_is_read(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("default_model: gpt-4.1\nmax_message_length: 1500\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(config))
    monkeypatch.delenv("DEFAULT_MODEL", raising=False)

    cfg = Settings(storage_root=str(tmp_path / "store"))

    assert cfg.default_model == "gpt-4.1"
    assert cfg.max_message_length == 1500


def test_init_values_override_yaml(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("default_model: gpt-4.1\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(config))

    assert Settings(default_model="glm-4.6").default_model == "glm-4.6"
