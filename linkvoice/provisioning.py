from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import aiohttp

from .clock import Clock
from .config import VALID_VOICES
from .errors import ProvisioningError
from .logs import get_logger
from .models import AgentProfile


T = TypeVar("T")

VOICE_PREFERENCES = {
    "female": "shimmer",
    "male": "echo",
    "neutral": "alloy",
    "warm": "shimmer",
    "professional": "echo",
    "friendly": "alloy",
    "calm": "sage",
}


def resolve_voice(voice: str = "", preference: str = "", *, default: str = "alloy") -> str:
    """An explicit valid voice wins, then the preference map, then default."""
    v = (voice or "").strip().lower()
    if v in VALID_VOICES:
        return v
    p = (preference or "").strip().lower()
    if p in VOICE_PREFERENCES:
        return VOICE_PREFERENCES[p]
    return default if default in VALID_VOICES else "alloy"


@dataclass(frozen=True, slots=True)
class Credentials:
    token: str
    expires_at_ms: int = 0
    model: str = ""


class SessionProvisioner(Protocol):
    async def provision(self, *, session_id: str, profile: AgentProfile, voice: str) -> Credentials: ...

    async def aclose(self) -> None: ...


HttpCall = Callable[[str, str, Optional[dict[str, Any]], dict[str, str]], Awaitable[tuple[int, dict[str, Any]]]]


class AiohttpCaller:
    """JSON-over-HTTP with one shared aiohttp session per process component."""

    def __init__(self, *, timeout_ms: int = 5000) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1, timeout_ms) / 1000.0)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __call__(
        self, method: str, url: str, body: Optional[dict[str, Any]], headers: dict[str, str]
    ) -> tuple[int, dict[str, Any]]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with self._session.request(method, url, json=body, headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {}
                return resp.status, data if isinstance(data, dict) else {}
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ProvisioningError("credential endpoint unreachable", cause=str(e)) from e

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


async def poll_with_backoff(
    fetch: Callable[[], Awaitable[Optional[T]]],
    *,
    clock: Clock,
    base_ms: int = 250,
    max_ms: int = 4000,
    max_attempts: int = 6,
) -> T:
    """
    Call fetch() until it returns a value. Sleeps base_ms * 2**n (capped at
    max_ms) between attempts and gives up after max_attempts.
    """
    delay = max(1, int(base_ms))
    for attempt in range(1, max(1, max_attempts) + 1):
        result = await fetch()
        if result is not None:
            return result
        if attempt == max_attempts:
            break
        await clock.sleep_ms(delay)
        delay = min(int(max_ms), delay * 2)
    raise ProvisioningError(f"credential not ready after {max_attempts} attempts")


class StaticProvisioner:
    """Uses a long-lived server key. Suitable when this process talks to the service directly."""

    def __init__(self, *, api_key: str, model: str = "") -> None:
        self._api_key = api_key
        self._model = model

    async def provision(self, *, session_id: str, profile: AgentProfile, voice: str) -> Credentials:
        if not self._api_key:
            raise ProvisioningError("no API key configured")
        return Credentials(token=self._api_key, model=profile.model or self._model)

    async def aclose(self) -> None:
        return


class OpenAIRealtimeProvisioner:
    """Mints a short-lived client secret from the realtime service's session endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        url: str,
        model: str,
        clock: Clock,
        vad_threshold: float = 0.5,
        vad_prefix_padding_ms: int = 300,
        vad_silence_duration_ms: int = 500,
        transcription_model: str = "whisper-1",
        call: Optional[HttpCall] = None,
        timeout_ms: int = 5000,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model
        self._clock = clock
        self._vad = {
            "type": "server_vad",
            "threshold": vad_threshold,
            "prefix_padding_ms": vad_prefix_padding_ms,
            "silence_duration_ms": vad_silence_duration_ms,
        }
        self._transcription_model = transcription_model
        self._owned = call is None
        self._call: HttpCall = call or AiohttpCaller(timeout_ms=timeout_ms)
        self._log = get_logger("provisioning")

    async def provision(self, *, session_id: str, profile: AgentProfile, voice: str) -> Credentials:
        if not self._api_key:
            raise ProvisioningError("no API key configured")
        model = profile.model or self._model
        body = {
            "model": model,
            "voice": voice,
            "instructions": profile.instructions,
            "modalities": ["audio", "text"],
            "turn_detection": self._vad,
            "input_audio_transcription": {"model": self._transcription_model},
        }
        status, data = await self._call(
            "POST", self._url, body, {"Authorization": f"Bearer {self._api_key}"}
        )
        secret = data.get("client_secret") or {}
        token = secret.get("value") if isinstance(secret, dict) else None
        if status != 200 or not token:
            self._log.warning("provision_failed", session_id=session_id, status=status)
            raise ProvisioningError(f"session endpoint returned {status}")
        expires_at = int(secret.get("expires_at") or 0) * 1000
        return Credentials(token=str(token), expires_at_ms=expires_at, model=model)

    async def aclose(self) -> None:
        if self._owned and isinstance(self._call, AiohttpCaller):
            await self._call.aclose()


class HttpCredentialProvisioner:
    """
    Opaque credential endpoint. 200 returns the credential; 202 means it is
    still being minted and the status URL is polled with bounded backoff.
    """

    def __init__(
        self,
        *,
        url: str,
        clock: Clock,
        call: Optional[HttpCall] = None,
        timeout_ms: int = 5000,
        poll_base_ms: int = 250,
        poll_max_ms: int = 4000,
        poll_max_attempts: int = 6,
    ) -> None:
        self._url = url
        self._clock = clock
        self._owned = call is None
        self._call: HttpCall = call or AiohttpCaller(timeout_ms=timeout_ms)
        self._poll_base_ms = poll_base_ms
        self._poll_max_ms = poll_max_ms
        self._poll_max_attempts = poll_max_attempts

    @staticmethod
    def _credential(data: dict[str, Any]) -> Optional[Credentials]:
        token = data.get("token")
        if not token:
            return None
        return Credentials(
            token=str(token),
            expires_at_ms=int(data.get("expiresAt") or 0),
            model=str(data.get("model") or ""),
        )

    async def provision(self, *, session_id: str, profile: AgentProfile, voice: str) -> Credentials:
        if not self._url:
            raise ProvisioningError("no credential endpoint configured")
        status, data = await self._call(
            "POST", self._url, {"sessionId": session_id, "agentId": profile.agent_id, "voice": voice}, {}
        )
        if status == 200:
            cred = self._credential(data)
            if cred is None:
                raise ProvisioningError("credential response without token")
            return cred
        if status != 202:
            raise ProvisioningError(f"credential endpoint returned {status}")

        status_url = str(data.get("statusUrl") or f"{self._url.rstrip('/')}/{session_id}")

        async def _fetch() -> Optional[Credentials]:
            st, body = await self._call("GET", status_url, None, {})
            if st == 202:
                return None
            if st != 200:
                raise ProvisioningError(f"credential status returned {st}")
            return self._credential(body)

        return await poll_with_backoff(
            _fetch,
            clock=self._clock,
            base_ms=self._poll_base_ms,
            max_ms=self._poll_max_ms,
            max_attempts=self._poll_max_attempts,
        )

    async def aclose(self) -> None:
        if self._owned and isinstance(self._call, AiohttpCaller):
            await self._call.aclose()
