"""
Provider registry for toolhost inference providers.

``ProviderRegistry`` is constructed once at startup and passed to whatever
needs it; nothing here keeps global mutable state.  Every provider is
reached through an OpenAI-compatible chat-completions endpoint, so resolving
``"provider/model"`` yields a ``ModelHandle`` that can build an
``openai.OpenAI`` client.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from toolhost_constants import OPENROUTER_BASE_URL

EnvGetter = Callable[[str], Optional[str]]


class ProviderError(ValueError):
    """Unknown provider or an unusable model string."""


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    requires_api_key: bool = True


DEFAULT_PROVIDERS: Tuple[ProviderMeta, ...] = (
    ProviderMeta(
        id="openai",
        label="OpenAI",
        default_base_url="https://api.openai.com/v1",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
    ),
    ProviderMeta(
        id="anthropic",
        label="Anthropic",
        default_base_url="https://api.anthropic.com/v1",
        api_key_env_vars=("ANTHROPIC_API_KEY",),
        base_url_env_var="ANTHROPIC_BASE_URL",
        aliases=("claude",),
    ),
    ProviderMeta(
        id="openrouter",
        label="OpenRouter",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
    ),
    ProviderMeta(
        id="google",
        label="Google Gemini",
        default_base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        api_key_env_vars=("GOOGLE_API_KEY", "GEMINI_API_KEY"),
        base_url_env_var="GOOGLE_BASE_URL",
        aliases=("gemini",),
    ),
    ProviderMeta(
        id="ollama",
        label="Ollama",
        default_base_url="http://localhost:11434/v1",
        base_url_env_var="OLLAMA_HOST",
        requires_api_key=False,
    ),
    ProviderMeta(
        id="custom",
        label="Custom endpoint",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
        requires_api_key=False,
    ),
)


@dataclass(frozen=True)
class ModelHandle:
    """A resolved ``provider/model`` pair, ready to build a client."""

    provider: str
    model: str
    base_url: Optional[str]
    api_key: Optional[str]

    @property
    def display_name(self) -> str:
        return f"{self.provider}/{self.model}"

    def create_client(self, **kwargs):
        """Build an ``openai.OpenAI`` client for this handle."""
        from openai import OpenAI

        client_kwargs = {"api_key": self.api_key or "not-needed"}
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        client_kwargs.update(kwargs)
        return OpenAI(**client_kwargs)


class ProviderRegistry:
    """Provider metadata plus key/base-URL resolution."""

    def __init__(
        self,
        providers: Iterable[ProviderMeta] = DEFAULT_PROVIDERS,
        *,
        env_get: EnvGetter = os.getenv,
    ):
        self._env_get = env_get
        self._providers: Dict[str, ProviderMeta] = {}
        self._aliases: Dict[str, str] = {}
        for meta in providers:
            self.register(meta)

    def register(self, meta: ProviderMeta) -> None:
        self._providers[meta.id] = meta
        self._aliases[meta.id] = meta.id
        for alias in meta.aliases:
            self._aliases[alias.lower()] = meta.id

    def normalize_provider_id(self, provider_id: Optional[str]) -> Optional[str]:
        if not provider_id:
            return None
        key = provider_id.strip().lower()
        return self._aliases.get(key, key) if key else None

    def get(self, provider_id: str) -> Optional[ProviderMeta]:
        return self._providers.get(self.normalize_provider_id(provider_id) or "")

    def list_provider_ids(self) -> List[str]:
        return list(self._providers)

    def resolve_api_key(self, provider_id: str, explicit_api_key: Optional[str] = None) -> Optional[str]:
        if explicit_api_key:
            return explicit_api_key
        meta = self.get(provider_id)
        if not meta:
            return None
        for env_var in meta.api_key_env_vars:
            value = self._env_get(env_var)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def resolve_base_url(self, provider_id: str, explicit_base_url: Optional[str] = None) -> Optional[str]:
        """Explicit value, then the provider's env override, then its default."""
        if isinstance(explicit_base_url, str) and explicit_base_url.strip():
            return explicit_base_url.strip().rstrip("/")
        meta = self.get(provider_id)
        if not meta:
            return None
        if meta.base_url_env_var:
            env_value = self._env_get(meta.base_url_env_var)
            if isinstance(env_value, str) and env_value.strip():
                value = env_value.strip().rstrip("/")
                if meta.id == "ollama" and not value.endswith("/v1"):
                    value += "/v1"
                return value
        if meta.default_base_url:
            return meta.default_base_url.rstrip("/")
        return None

    def resolve(
        self,
        model_string: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> ModelHandle:
        """Turn ``"provider/model"`` into a ModelHandle.

        Raises ProviderError for a missing slash, an unknown provider, a
        ``custom`` provider without a base URL, or a missing required key.
        """
        provider_part, sep, model = (model_string or "").strip().partition("/")
        if not sep or not provider_part or not model:
            raise ProviderError(
                f"invalid model '{model_string}': expected 'provider/model' (e.g. openai/gpt-4o)"
            )
        meta = self.get(provider_part)
        if meta is None:
            raise ProviderError(
                f"unknown provider '{provider_part}' (known: {', '.join(self.list_provider_ids())})"
            )

        resolved_url = self.resolve_base_url(meta.id, base_url)
        if resolved_url is None:
            raise ProviderError(f"provider '{meta.id}' needs a base URL (--base-url or {meta.base_url_env_var})")

        resolved_key = self.resolve_api_key(meta.id, api_key)
        if meta.requires_api_key and not resolved_key:
            env_hint = " or ".join(meta.api_key_env_vars) or "--api-key"
            raise ProviderError(f"no API key for provider '{meta.id}' (set {env_hint})")

        return ModelHandle(provider=meta.id, model=model, base_url=resolved_url, api_key=resolved_key)
