from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from .orchestrator import SessionOrchestrator


class SessionRegistry:
    """
    Lookup from session id to its live actor. Holds no session state of its
    own: callers reach a session only through the actor's public methods.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, "SessionOrchestrator"] = {}

    def add(self, orch: "SessionOrchestrator") -> None:
        sid = orch.session.session_id
        if sid in self._sessions:
            raise KeyError(f"session already registered: {sid}")
        self._sessions[sid] = orch

    def get(self, session_id: str) -> Optional["SessionOrchestrator"]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator["SessionOrchestrator"]:
        return iter(list(self._sessions.values()))

    async def stop_all(self, *, reason: str = "shutdown") -> None:
        for orch in list(self._sessions.values()):
            await orch.stop(reason=reason)
        self._sessions.clear()
