import json

import pytest
import requests

from remote_vibe.core.errors import ModelCallFailed
from remote_vibe.services.model_client import (
    OfflineModelClient,
    OpenAICompatibleClient,
    build_model_client,
)
from remote_vibe.services.streaming import collect_text, iter_as_async


def _sse(*tokens):
    lines = [b": keep-alive", b""]
    for token in tokens:
        lines.append(("data: " + json.dumps({"choices": [{"delta": {"content": token}}]})).encode("utf-8"))
    lines.append(b"data: not-json")
    lines.append(b"data: [DONE]")
    return lines


class FakeResponse:
    def __init__(self, lines, status_code=200):
        self.lines = lines
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_lines(self):
        yield from self.lines


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest.mark.asyncio
async def test_streams_tokens_from_sse():
    session = FakeSession(FakeResponse(_sse("Hello", ", ", "world")))
    client = OpenAICompatibleClient("https://llm.test/v1/", "m1", api_key="k", session=session)
    text = await collect_text(client.stream_reply([{"role": "user", "content": "hi"}]))
    assert text == "Hello, world"

    url, kwargs = session.calls[0]
    assert url == "https://llm.test/v1/chat/completions"
    assert kwargs["json"]["stream"] is True
    assert kwargs["json"]["model"] == "m1"
    assert kwargs["headers"]["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_http_errors_become_model_call_failed():
    session = FakeSession(FakeResponse([], status_code=500))
    client = OpenAICompatibleClient("https://llm.test/v1", "m1", session=session)
    with pytest.raises(ModelCallFailed):
        await collect_text(client.stream_reply([]))


@pytest.mark.asyncio
async def test_connection_errors_become_model_call_failed():
    session = FakeSession(exc=requests.ConnectionError("refused"))
    client = OpenAICompatibleClient("https://llm.test/v1", "m1", session=session)
    with pytest.raises(ModelCallFailed):
        await collect_text(client.stream_reply([]))
    assert "Authorization" not in session.calls[0][1]["headers"]


@pytest.mark.asyncio
async def test_offline_client_has_no_question():
    text = await collect_text(OfflineModelClient().stream_reply([{"role": "user", "content": "list files"}]))
    assert "list files" in text
    assert "?" not in text


@pytest.mark.asyncio
async def test_iter_as_async_preserves_order():
    assert [x async for x in iter_as_async(iter([1, 2, 3]))] == [1, 2, 3]


def test_build_model_client_selection():
    assert isinstance(build_model_client({}), OfflineModelClient)
    client = build_model_client({"LOCAL_BASE_URL": "http://localhost:8000/v1", "LOCAL_MODEL": "qwen"})
    assert isinstance(client, OpenAICompatibleClient)
    assert client.model == "qwen"
    assert client.base_url == "http://localhost:8000/v1"
