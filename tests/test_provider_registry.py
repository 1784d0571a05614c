"""Unit tests for toolhost_cli.provider_registry."""

import pytest

from toolhost_constants import OPENROUTER_BASE_URL
from toolhost_cli.provider_registry import (
    ModelHandle,
    ProviderError,
    ProviderMeta,
    ProviderRegistry,
)


def _env(mapping):
    return lambda key: mapping.get(key)


def _registry(env=None):
    return ProviderRegistry(env_get=_env(env or {}))


def test_normalize_provider_id_aliases_and_unknowns():
    reg = _registry()
    assert reg.normalize_provider_id(" Claude ") == "anthropic"
    assert reg.normalize_provider_id("gemini") == "google"
    assert reg.normalize_provider_id("") is None
    assert reg.normalize_provider_id(None) is None
    assert reg.normalize_provider_id("  Unknown-Provider  ") == "unknown-provider"


def test_resolve_api_key_prefers_explicit_then_first_non_empty_env_var():
    env = {"GOOGLE_API_KEY": " google-primary ", "GEMINI_API_KEY": "gemini-secondary"}
    reg = _registry(env)
    assert reg.resolve_api_key("google", "explicit-key") == "explicit-key"
    assert reg.resolve_api_key("google") == "google-primary"

    env["GOOGLE_API_KEY"] = "   "
    assert reg.resolve_api_key("gemini") == "gemini-secondary"
    assert reg.resolve_api_key("missing-provider") is None


def test_resolve_base_url_precedence_and_normalization():
    env = {"OPENAI_BASE_URL": " https://proxy.example.test/v1/ "}
    reg = _registry(env)
    assert reg.resolve_base_url("openai", " https://override.example/v1/ ") == "https://override.example/v1"
    assert reg.resolve_base_url("openai") == "https://proxy.example.test/v1"
    assert reg.resolve_base_url("openrouter") == OPENROUTER_BASE_URL
    assert reg.resolve_base_url("missing-provider") is None


def test_ollama_host_gets_v1_suffix():
    reg = _registry({"OLLAMA_HOST": "http://gpu-box:11434"})
    assert reg.resolve_base_url("ollama") == "http://gpu-box:11434/v1"


def test_resolve_model_string():
    reg = _registry({"OPENROUTER_API_KEY": "or-key"})
    handle = reg.resolve("openrouter/anthropic/claude-sonnet-4")
    assert handle == ModelHandle(
        provider="openrouter",
        model="anthropic/claude-sonnet-4",
        base_url=OPENROUTER_BASE_URL,
        api_key="or-key",
    )
    assert handle.display_name == "openrouter/anthropic/claude-sonnet-4"


def test_resolve_alias_and_keyless_provider():
    reg = _registry({"ANTHROPIC_API_KEY": "sk-ant"})
    assert reg.resolve("claude/claude-sonnet-4").provider == "anthropic"
    local = reg.resolve("ollama/llama3.3")
    assert local.api_key is None
    assert local.base_url == "http://localhost:11434/v1"


@pytest.mark.parametrize("model_string, fragment", [
    ("gpt-4o", "expected 'provider/model'"),
    ("openai/", "expected 'provider/model'"),
    ("nope/model", "unknown provider 'nope'"),
    ("openai/gpt-4o", "no API key for provider 'openai'"),
    ("custom/my-model", "needs a base URL"),
])
def test_resolve_errors(model_string, fragment):
    with pytest.raises(ProviderError) as exc:
        _registry().resolve(model_string)
    assert fragment in str(exc.value)


def test_custom_provider_with_base_url():
    handle = _registry().resolve("custom/my-model", base_url="http://localhost:8000/v1/")
    assert handle.base_url == "http://localhost:8000/v1"
    assert handle.api_key is None


def test_register_extra_provider():
    reg = _registry({"ACME_KEY": "k"})
    reg.register(ProviderMeta(
        id="acme", label="Acme", default_base_url="https://acme.test/v1",
        api_key_env_vars=("ACME_KEY",), aliases=("wile",),
    ))
    assert "acme" in reg.list_provider_ids()
    assert reg.resolve("wile/e-coyote").base_url == "https://acme.test/v1"


def test_registries_are_independent():
    a = _registry()
    b = _registry()
    a.register(ProviderMeta(id="only-a", label="A", default_base_url="http://a", requires_api_key=False))
    assert a.get("only-a") is not None
    assert b.get("only-a") is None


def test_create_client_passes_settings():
    handle = ModelHandle(provider="ollama", model="llama3", base_url="http://localhost:11434/v1", api_key=None)
    client = handle.create_client(max_retries=0)
    assert str(client.base_url).rstrip("/") == "http://localhost:11434/v1"
    assert client.api_key == "not-needed"
    assert client.max_retries == 0
