"""Model metadata, capability lookup, and token estimation utilities.

Capabilities are advisory: they clamp request parameters (max output
tokens, temperature) but an unknown model always gets usable defaults and
never blocks a request.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from toolhost_constants import OPENROUTER_MODELS_URL

logger = logging.getLogger(__name__)

_model_metadata_cache: Dict[str, Dict[str, Any]] = {}
_model_metadata_cache_time: float = 0
_MODEL_CACHE_TTL = 3600

# Conservative floor for unknown models; override with MODEL_CONTEXT_LENGTH.
SAFE_DEFAULT_CONTEXT_LENGTH = 8192
SAFE_DEFAULT_MAX_OUTPUT_TOKENS = 4096


@dataclass(frozen=True)
class ModelCapabilities:
    context_length: int = SAFE_DEFAULT_CONTEXT_LENGTH
    max_output_tokens: int = SAFE_DEFAULT_MAX_OUTPUT_TOKENS
    supports_temperature: bool = True
    known: bool = False


# Keys are matched as prefixes of the bare model name (provider stripped).
DEFAULT_CAPABILITIES: Dict[str, ModelCapabilities] = {
    "claude-opus-4": ModelCapabilities(200000, 32000, True, True),
    "claude-sonnet-4": ModelCapabilities(200000, 64000, True, True),
    "claude-3-7-sonnet": ModelCapabilities(200000, 64000, True, True),
    "claude-3-5-haiku": ModelCapabilities(200000, 8192, True, True),
    "claude-haiku-4": ModelCapabilities(200000, 64000, True, True),
    "gpt-4o-mini": ModelCapabilities(128000, 16384, True, True),
    "gpt-4o": ModelCapabilities(128000, 16384, True, True),
    "gpt-4.1": ModelCapabilities(1047576, 32768, True, True),
    "gpt-4-turbo": ModelCapabilities(128000, 4096, True, True),
    "gpt-5": ModelCapabilities(400000, 128000, False, True),
    "o1": ModelCapabilities(200000, 100000, False, True),
    "o3": ModelCapabilities(200000, 100000, False, True),
    "o4-mini": ModelCapabilities(200000, 100000, False, True),
    "gemini-2.0-flash": ModelCapabilities(1048576, 8192, True, True),
    "gemini-2.5-pro": ModelCapabilities(1048576, 65536, True, True),
    "gemini-2.5-flash": ModelCapabilities(1048576, 65536, True, True),
    "llama-3.3-70b": ModelCapabilities(131072, 8192, True, True),
    "deepseek-chat": ModelCapabilities(65536, 8192, True, True),
    "qwen-2.5-72b": ModelCapabilities(32768, 8192, True, True),
}


def _get_fallback_context_length() -> int:
    env_override = os.getenv("MODEL_CONTEXT_LENGTH")
    if env_override:
        try:
            return int(env_override)
        except ValueError:
            logger.warning("Invalid MODEL_CONTEXT_LENGTH value: %s, using default", env_override)
    return SAFE_DEFAULT_CONTEXT_LENGTH


def fetch_model_metadata(force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
    """Fetch model metadata from OpenRouter (cached for 1 hour)."""
    global _model_metadata_cache, _model_metadata_cache_time

    if not force_refresh and _model_metadata_cache and (time.time() - _model_metadata_cache_time) < _MODEL_CACHE_TTL:
        return _model_metadata_cache

    try:
        response = requests.get(OPENROUTER_MODELS_URL, timeout=10)
        response.raise_for_status()
        data = response.json()

        cache = {}
        for model in data.get("data", []):
            model_id = model.get("id", "")
            top = model.get("top_provider") or {}
            cache[model_id] = {
                "context_length": model.get("context_length"),
                "max_completion_tokens": top.get("max_completion_tokens"),
                "supported_parameters": model.get("supported_parameters"),
            }
            canonical = model.get("canonical_slug", "")
            if canonical and canonical != model_id:
                cache[canonical] = cache[model_id]

        _model_metadata_cache = cache
        _model_metadata_cache_time = time.time()
        logger.debug("Fetched metadata for %s models from OpenRouter", len(cache))
        return cache

    except Exception as e:
        logger.warning("Failed to fetch model metadata from OpenRouter: %s", e)
        return _model_metadata_cache or {}


def _from_openrouter(entry: Dict[str, Any]) -> ModelCapabilities:
    params = entry.get("supported_parameters")
    return ModelCapabilities(
        context_length=int(entry.get("context_length") or _get_fallback_context_length()),
        max_output_tokens=int(entry.get("max_completion_tokens") or SAFE_DEFAULT_MAX_OUTPUT_TOKENS),
        supports_temperature=("temperature" in params) if isinstance(params, list) else True,
        known=True,
    )


def get_model_capabilities(model: str, provider: Optional[str] = None) -> ModelCapabilities:
    """Look up capabilities for ``model``.

    Resolution order:
    1. OpenRouter catalog (only when the provider is ``openrouter``)
    2. Built-in DEFAULT_CAPABILITIES table (longest prefix wins)
    3. Safe defaults
    """
    if provider == "openrouter":
        metadata = fetch_model_metadata()
        if model in metadata:
            return _from_openrouter(metadata[model])

    bare = model.split("/", 1)[-1].lower()
    best = None
    for prefix in DEFAULT_CAPABILITIES:
        if bare.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is not None:
        return DEFAULT_CAPABILITIES[best]

    logger.debug("Unknown model '%s' -- using default capabilities", model)
    return ModelCapabilities(context_length=_get_fallback_context_length())


def clamp_max_tokens(requested: Optional[int], caps: ModelCapabilities) -> Optional[int]:
    """Cap a requested output budget at what the model accepts.

    ``None`` stays ``None`` (let the provider pick).
    """
    if requested is None:
        return None
    if requested <= 0:
        return None
    if caps.known:
        return min(requested, caps.max_output_tokens)
    return requested


def estimate_tokens_rough(text: str) -> int:
    """Rough token estimate (~4 chars/token)."""
    if not text:
        return 0
    return len(text) // 4


def estimate_messages_tokens_rough(messages: List[Dict[str, Any]]) -> int:
    """Rough token estimate for a message list."""
    total_chars = sum(len(str(msg)) for msg in messages)
    return total_chars // 4
