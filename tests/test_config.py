import json

import pytest

from pinproxy.config import (
    DEFAULT_BASE_URL,
    ConfigLoader,
    RoutingSettings,
    normalize_model_providers,
    resolve_bind_address,
)
from pinproxy.errors import InvalidPayloadError

from conftest import write_config


def test_normalize_trims_and_drops_blank_entries():
    table = normalize_model_providers({
        " z-ai/glm-5 ": " atlas-cloud/fp8 ",
        "": "nobody",
        "orphan": "   ",
        "none-provider": None,
    })
    assert table == {"z-ai/glm-5": "atlas-cloud/fp8"}


def test_normalize_is_idempotent():
    once = normalize_model_providers({" a ": " b ", "c": "d"})
    assert normalize_model_providers(once) == once


@pytest.mark.parametrize("value", [None, "z-ai/glm-5", ["a", "b"], 3])
def test_normalize_non_mapping_is_empty(value):
    assert normalize_model_providers(value) == {}


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "config.json"
    settings = ConfigLoader(str(path)).load_config()

    assert path.exists()
    assert settings.openrouter_api_key == ""
    assert settings.openrouter_base_url == DEFAULT_BASE_URL
    assert settings.model_providers == {"z-ai/glm-5": "atlas-cloud/fp8"}
    assert settings.port == 3434
    assert json.loads(path.read_text())["bindHost"] == "127.0.0.1"


def test_unparsable_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    settings = ConfigLoader(str(path)).load_config()

    assert settings.model_providers == {}
    assert settings.bind_host == "127.0.0.1"
    assert json.loads(path.read_text())["openrouterBaseUrl"] == DEFAULT_BASE_URL


def test_legacy_pin_fields_are_migrated(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "openrouterApiKey": "sk-old",
        "pinModel": "deepseek/deepseek-chat",
        "pinProvider": "deepinfra",
    }), encoding="utf-8")

    settings = ConfigLoader(str(path)).load_config()
    assert settings.model_providers == {"deepseek/deepseek-chat": "deepinfra"}

    stored = json.loads(path.read_text())
    assert "pinModel" not in stored
    assert stored["modelProviders"] == {"deepseek/deepseek-chat": "deepinfra"}


def test_legacy_pin_does_not_override_table_entry(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "modelProviders": {"m": "table-provider"},
        "pinModel": "m",
        "pinProvider": "legacy-provider",
    }), encoding="utf-8")
    assert ConfigLoader(str(path)).load_config().model_providers == {"m": "table-provider"}


def test_external_edits_are_seen_on_next_load(config_path):
    loader = ConfigLoader(str(config_path))
    assert loader.load_config().allow_fallbacks is False

    write_config(config_path, allowFallbacks=True, modelProviders={})
    settings = loader.load_config()
    assert settings.allow_fallbacks is True
    assert settings.model_providers == {}


def test_save_keeps_bind_address(tmp_path):
    path = tmp_path / "config.json"
    write_config(path, bindHost="0.0.0.0", port=8080)
    loader = ConfigLoader(str(path))

    saved = loader.save_config({"openrouterApiKey": "sk-new", "modelProviders": {"a": "b"}})
    assert saved.bind_host == "0.0.0.0"
    assert saved.port == 8080
    assert saved.openrouter_base_url == DEFAULT_BASE_URL
    assert loader.load_config().model_providers == {"a": "b"}


def test_save_rejects_invalid_values_without_writing(config_path):
    before = config_path.read_text()
    loader = ConfigLoader(str(config_path))

    with pytest.raises(InvalidPayloadError):
        loader.save_config({"openrouterApiKey": "sk-x", "port": "not-a-port"})
    with pytest.raises(InvalidPayloadError):
        loader.save_config(["not", "an", "object"])

    assert config_path.read_text() == before


def test_settings_serialize_with_camel_case_keys():
    data = RoutingSettings(openrouter_api_key="k").to_json()
    assert set(data) == {"openrouterApiKey", "openrouterBaseUrl", "modelProviders", "allowFallbacks", "bindHost", "port"}


def test_base_url_drops_trailing_slashes():
    assert RoutingSettings(openrouter_base_url="https://example.test/api/v1//").base_url == "https://example.test/api/v1"


def test_env_overrides_bind_address(monkeypatch):
    settings = RoutingSettings(bind_host="127.0.0.1", port=3434)
    monkeypatch.setenv("HOST", "0.0.0.0")
    monkeypatch.setenv("PORT", "9000")
    assert resolve_bind_address(settings) == ("0.0.0.0", 9000)


def test_stored_bind_address_used_without_env(monkeypatch):
    monkeypatch.delenv("HOST", raising=False)
    monkeypatch.delenv("PORT", raising=False)
    assert resolve_bind_address(RoutingSettings(bind_host="10.0.0.5", port=4000)) == ("10.0.0.5", 4000)


def test_one_bad_field_keeps_the_rest(tmp_path):
    path = tmp_path / "config.json"
    write_config(
        path,
        port="abc",
        allowFallbacks={"nested": True},
        modelProviders={"z-ai/glm-5": "atlas-cloud/fp8", "moonshotai/kimi-k2": "groq"},
    )

    settings = ConfigLoader(str(path)).load_config()
    assert settings.port == 3434
    assert settings.allow_fallbacks is False
    assert settings.openrouter_api_key == "sk-test"
    assert settings.model_providers == {"z-ai/glm-5": "atlas-cloud/fp8", "moonshotai/kimi-k2": "groq"}

    stored = json.loads(path.read_text())
    assert stored["openrouterApiKey"] == "sk-test"
    assert stored["modelProviders"] == {"z-ai/glm-5": "atlas-cloud/fp8", "moonshotai/kimi-k2": "groq"}
    assert stored["port"] == 3434
