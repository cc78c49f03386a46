from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Iterator, List, Mapping, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..core.errors import ModelCallFailed
from .model_router import ModelRouter, ProviderSelection
from .streaming import iter_as_async


logger = logging.getLogger(__name__)
LOG = logging.getLogger("remote_vibe.llm")

ChatMessages = List[Dict[str, str]]


class ModelClient(Protocol):
    """The model collaborator: chat messages in, reply text chunks out."""

    def stream_reply(self, messages: ChatMessages) -> AsyncIterator[str]: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class OpenAICompatibleClient:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or _build_session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _iter_tokens(self, messages: ChatMessages) -> Iterator[str]:
        LOG.debug("llm_stream model=%s base_url=%s messages=%d", self.model, self.base_url, len(messages))
        payload = {"model": self.model, "messages": messages, "stream": True}
        try:
            with self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
                stream=True,
            ) as resp:
                resp.raise_for_status()
                for raw_line in resp.iter_lines():
                    if not raw_line:
                        continue
                    line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                    if not line.startswith("data: "):
                        continue
                    data = line[6:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        parsed: Dict[str, Any] = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                    token = delta.get("content") or ""
                    if token:
                        yield token
        except requests.exceptions.RequestException as exc:
            LOG.warning("llm_stream_failed model=%s err=%s", self.model, exc)
            raise ModelCallFailed(f"Language model request failed: {exc}", {"model": self.model}) from exc

    def stream_reply(self, messages: ChatMessages) -> AsyncIterator[str]:
        return iter_as_async(self._iter_tokens(messages))


class OfflineModelClient:
    """Used when no provider is configured: acknowledges the request without a model."""

    def __init__(self, hint: str = "set OPENAI_API_KEY, XAI_API_KEY or LOCAL_BASE_URL") -> None:
        self.hint = hint

    async def stream_reply(self, messages: ChatMessages) -> AsyncIterator[str]:
        last_user = next((m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), "")
        yield "No language model provider is configured, so this request was recorded but not executed.\n"
        yield f"Request: {last_user.strip()}\n"
        yield f"To enable the assistant, {self.hint}."


def client_from_selection(selection: ProviderSelection, env: Mapping[str, str]) -> OpenAICompatibleClient:
    api_key = env.get(selection.api_key_env) if selection.api_key_env else None
    return OpenAICompatibleClient(base_url=selection.base_url, model=selection.model, api_key=api_key)


def build_model_client(env: Optional[Mapping[str, str]] = None) -> ModelClient:
    env = env if env is not None else os.environ
    selection = ModelRouter(env).maybe_select_provider()
    if selection is None:
        logger.warning("No model provider configured; using offline assistant")
        return OfflineModelClient()
    logger.info("Using model provider name=%s model=%s base_url=%s", selection.name, selection.model, selection.base_url)
    return client_from_selection(selection, env)
