"""Routing helpers for selecting the model provider behind the assistant.

The router does not couple directly to concrete clients; it selects a
provider configuration that :mod:`model_client` turns into a client. This
keeps the selection policy unit-testable against a plain env mapping.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a request."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url: str
    requires_api_key: bool = True


class ModelRouter:
    """Simple policy-based router over OpenAI-compatible providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.1",
            "default_base_url": None,
            "requires_api_key": False,
        },
    }

    PRIORITY = ("openai", "xai", "local")

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ
        preferred = (self._env.get("REMOTE_VIBE_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))
        # Keyless providers must at least be pointed at an endpoint
        return bool(self._base_url(cfg))

    def _base_url(self, cfg: Dict[str, Optional[str] | bool]) -> str:
        base_url_env = cfg.get("base_url_env") or ""
        return (self._env.get(str(base_url_env)) or str(cfg.get("default_base_url") or "")).rstrip("/")

    def resolve_provider(self, provider: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = cfg.get("model_env") or ""
        model = self._env.get(str(model_env)) or str(cfg.get("default_model") or "")
        api_key_env = cfg.get("api_key_env")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=str(api_key_env) if api_key_env else None,
            base_url=self._base_url(cfg),
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    def select_provider(self) -> ProviderSelection:
        """Return the first available provider, honouring the preferred one.

        Raises
        ------
        RuntimeError
            If no provider is configured.
        """

        priority = list(self.PRIORITY)
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider):
                return self.resolve_provider(provider)
        raise RuntimeError("No model provider configured.")

    def maybe_select_provider(self) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider()
        except RuntimeError:
            return None
