from __future__ import annotations

import asyncio
import sys
import types
from types import SimpleNamespace

from linkvoice.llm_client import GeminiLLMClient, OpenAILLMClient


class _FakeStream:
    def __init__(self, events):
        self._events = list(events)

    def __aiter__(self):
        self._i = 0
        return self

    async def __anext__(self):
        if self._i >= len(self._events):
            raise StopAsyncIteration
        v = self._events[self._i]
        self._i += 1
        return v


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class _FakeCompletions:
    def __init__(self):
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return _FakeStream([_chunk("Hello"), _chunk(" there."), _chunk(None), SimpleNamespace(choices=[])])


class _FakeAsyncOpenAI:
    last = None

    def __init__(self, api_key=None, timeout=None):
        _ = (api_key, timeout)
        self.closed = False
        self.chat = SimpleNamespace(completions=_FakeCompletions())
        _FakeAsyncOpenAI.last = self

    async def close(self):
        self.closed = True


def test_openai_client_stream_parses_deltas(monkeypatch) -> None:
    fake_mod = types.ModuleType("openai")
    fake_mod.AsyncOpenAI = _FakeAsyncOpenAI
    monkeypatch.setitem(sys.modules, "openai", fake_mod)

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k", model="gpt-4o-mini", max_tokens=80)
        history = [{"role": "user", "content": "hi"}]
        parts = [d async for d in client.stream_reply(instructions="Be brief.", history=history)]
        assert "".join(parts) == "Hello there."
        fake = _FakeAsyncOpenAI.last
        kwargs = fake.chat.completions.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief."}
        assert kwargs["messages"][1:] == history
        assert kwargs["stream"] is True and kwargs["max_tokens"] == 80
        await client.aclose()
        assert fake.closed

    asyncio.run(_run())


class _FakeGenaiModels:
    async def generate_content_stream(self, **kwargs):
        self.kwargs = kwargs
        # The stream may end with an empty terminal chunk.
        return _FakeStream([SimpleNamespace(text="Hi"), SimpleNamespace(text=" you."), SimpleNamespace(text="")])


class _FakeGenaiClient:
    last = None

    def __init__(self, api_key=None):
        _ = api_key
        self.closed = False
        self.aio = SimpleNamespace(models=_FakeGenaiModels(), aclose=self._aclose)
        _FakeGenaiClient.last = self

    async def _aclose(self):
        self.closed = True


def test_gemini_client_maps_roles_and_skips_empty_chunks(monkeypatch) -> None:
    types_mod = types.ModuleType("google.genai.types")
    types_mod.Content = lambda role, parts: SimpleNamespace(role=role, parts=parts)
    types_mod.Part = lambda text: SimpleNamespace(text=text)
    types_mod.GenerateContentConfig = lambda **kw: SimpleNamespace(**kw)
    genai_mod = types.ModuleType("google.genai")
    genai_mod.Client = _FakeGenaiClient
    genai_mod.types = types_mod
    google_mod = types.ModuleType("google")
    google_mod.genai = genai_mod
    monkeypatch.setitem(sys.modules, "google", google_mod)
    monkeypatch.setitem(sys.modules, "google.genai", genai_mod)
    monkeypatch.setitem(sys.modules, "google.genai.types", types_mod)

    async def _run() -> None:
        client = GeminiLLMClient(api_key="g", model="gemini-2.0-flash", max_tokens=60)
        history = [{"role": "user", "content": "hello"}, {"role": "assistant", "content": "hi"}]
        parts = [d async for d in client.stream_reply(instructions="Be kind.", history=history)]
        assert parts == ["Hi", " you."]
        fake = _FakeGenaiClient.last
        kwargs = fake.aio.models.kwargs
        assert [c.role for c in kwargs["contents"]] == ["user", "model"]
        assert kwargs["config"].system_instruction == "Be kind."
        assert kwargs["config"].max_output_tokens == 60
        await client.aclose()
        assert fake.closed

    asyncio.run(_run())


def test_missing_dependency_raises(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "openai", None)

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k")
        try:
            async for _ in client.stream_reply(instructions="x", history=[]):
                pass
        except RuntimeError as e:
            assert "requires the dependency 'openai'" in str(e)
            return
        raise AssertionError("expected RuntimeError")

    asyncio.run(_run())
