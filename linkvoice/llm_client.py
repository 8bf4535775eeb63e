from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

from .clock import Clock


Message = dict[str, str]


class LLMClient(Protocol):
    def stream_reply(self, *, instructions: str, history: list[Message]) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(slots=True)
class FakeLLMClient:
    clock: Clock
    tokens: list[str]
    token_delay_ms: int = 0
    fail_times: int = 0
    calls: int = 0

    async def stream_reply(self, *, instructions: str, history: list[Message]) -> AsyncIterator[str]:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("fake llm failure")
        for tok in self.tokens:
            if self.token_delay_ms > 0:
                await self.clock.sleep_ms(self.token_delay_ms)
            yield tok

    async def aclose(self) -> None:
        return


class OpenAILLMClient:
    """
    OpenAI chat-completions streaming adapter.

    Lazy-imports `openai` so deterministic tests run without credentials.
    Replies are capped short because they are spoken.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        max_tokens: int = 150,
        temperature: float = 0.8,
        timeout_ms: int = 8000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = int(max_tokens)
        self.temperature = float(temperature)
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAILLMClient requires the dependency 'openai'. "
                "Install with: python3 -m pip install -e ."
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key, timeout=max(1.0, self.timeout_ms / 1000.0))
        return self._client

    @staticmethod
    def _delta_text(chunk: Any) -> str:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return ""
        delta = getattr(choices[0], "delta", None)
        content = getattr(delta, "content", None)
        return str(content) if content else ""

    async def stream_reply(self, *, instructions: str, history: list[Message]) -> AsyncIterator[str]:
        client = self._ensure_client()
        messages = [{"role": "system", "content": instructions}, *history]
        stream = await client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stream=True,
        )
        async for chunk in stream:
            text = self._delta_text(chunk)
            if text:
                yield text

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None


class GeminiLLMClient:
    """
    Gemini streaming adapter using the Google Gen AI SDK (google-genai), imported lazily.
    """

    def __init__(self, *, api_key: str = "", model: str = "gemini-2.0-flash", max_tokens: int = 150) -> None:
        self._api_key = api_key
        self._model = model
        self._max_tokens = int(max_tokens)
        self._client: Any = None
        self._types: Any = None

    def _ensure_client(self) -> tuple[Any, Any]:
        if self._client is not None:
            return (self._client, self._types)
        try:
            from google import genai  # type: ignore[import-not-found]
            from google.genai import types  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "GeminiLLMClient requires the optional dependency 'google-genai'. "
                "Install with: python3 -m pip install -e '.[gemini]'"
            ) from e
        self._client = genai.Client(api_key=self._api_key)
        self._types = types
        return (self._client, self._types)

    async def stream_reply(self, *, instructions: str, history: list[Message]) -> AsyncIterator[str]:
        client, types_mod = self._ensure_client()
        contents = [
            types_mod.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[types_mod.Part(text=m["content"])],
            )
            for m in history
        ]
        cfg = types_mod.GenerateContentConfig(
            system_instruction=instructions,
            max_output_tokens=self._max_tokens,
        )
        # The stream may end with an empty chunk; drain it to completion.
        stream = await client.aio.models.generate_content_stream(
            model=self._model,
            contents=contents,
            config=cfg,
        )
        async for chunk in stream:
            txt = getattr(chunk, "text", None)
            if txt:
                yield str(txt)

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aio.aclose()
            finally:
                self._client = None
                self._types = None
