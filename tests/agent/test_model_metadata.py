"""Tests for agent.model_metadata -- capability lookup and token estimates."""

from unittest.mock import MagicMock, patch

import pytest

import agent.model_metadata as mm
from agent.model_metadata import (
    SAFE_DEFAULT_CONTEXT_LENGTH,
    ModelCapabilities,
    clamp_max_tokens,
    estimate_messages_tokens_rough,
    estimate_tokens_rough,
    fetch_model_metadata,
    get_model_capabilities,
)


@pytest.fixture(autouse=True)
def _clear_cache(monkeypatch):
    monkeypatch.setattr(mm, "_model_metadata_cache", {})
    monkeypatch.setattr(mm, "_model_metadata_cache_time", 0)
    monkeypatch.delenv("MODEL_CONTEXT_LENGTH", raising=False)


def _openrouter_response():
    resp = MagicMock()
    resp.json.return_value = {"data": [{
        "id": "anthropic/claude-sonnet-4",
        "canonical_slug": "anthropic/claude-4-sonnet-20250522",
        "context_length": 200000,
        "top_provider": {"max_completion_tokens": 64000},
        "supported_parameters": ["tools", "temperature"],
    }]}
    resp.raise_for_status.return_value = None
    return resp


class TestCapabilities:
    def test_longest_prefix_wins(self):
        assert get_model_capabilities("gpt-4o-mini-2024") == mm.DEFAULT_CAPABILITIES["gpt-4o-mini"]
        assert get_model_capabilities("openai/gpt-4o") == mm.DEFAULT_CAPABILITIES["gpt-4o"]

    def test_unknown_model_gets_defaults(self):
        caps = get_model_capabilities("acme/mystery-1")
        assert not caps.known
        assert caps.context_length == SAFE_DEFAULT_CONTEXT_LENGTH

    def test_env_override_for_unknown(self, monkeypatch):
        monkeypatch.setenv("MODEL_CONTEXT_LENGTH", "32000")
        assert get_model_capabilities("mystery").context_length == 32000

    def test_openrouter_lookup(self):
        with patch("agent.model_metadata.requests.get", return_value=_openrouter_response()) as get:
            caps = get_model_capabilities("anthropic/claude-sonnet-4", provider="openrouter")
            get_model_capabilities("anthropic/claude-4-sonnet-20250522", provider="openrouter")
        assert get.call_count == 1
        assert caps.context_length == 200000
        assert caps.max_output_tokens == 64000
        assert caps.supports_temperature

    def test_no_network_for_other_providers(self):
        with patch("agent.model_metadata.requests.get") as get:
            get_model_capabilities("gpt-4o", provider="openai")
        get.assert_not_called()

    def test_fetch_failure_returns_empty(self):
        with patch("agent.model_metadata.requests.get", side_effect=OSError("offline")):
            assert fetch_model_metadata(force_refresh=True) == {}


class TestClamp:
    def test_none_and_non_positive(self):
        caps = ModelCapabilities(known=True, max_output_tokens=100)
        assert clamp_max_tokens(None, caps) is None
        assert clamp_max_tokens(0, caps) is None

    def test_clamped_for_known_models(self):
        assert clamp_max_tokens(500, ModelCapabilities(known=True, max_output_tokens=100)) == 100

    def test_unknown_models_pass_through(self):
        assert clamp_max_tokens(500, ModelCapabilities(max_output_tokens=100)) == 500


def test_token_estimates():
    assert estimate_tokens_rough("") == 0
    assert estimate_tokens_rough("abcdefgh") == 2
    assert estimate_messages_tokens_rough([{"role": "user", "content": "x"}]) > 0
