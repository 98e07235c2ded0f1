"""Session persistence contract and an in-memory reference store."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from relay_llm.types import Message


@runtime_checkable
class SessionStore(Protocol):
    """Loads and saves a session's messages by session id.

    ``delete`` is optional; :meth:`Session.delete` checks for it.
    """

    async def load(self, session_id: str) -> list[Message] | None: ...

    async def save(self, session_id: str, messages: list[Message]) -> None: ...


class InMemorySessionStore:
    """Dict-backed store. Lists are copied on the way in and out."""

    def __init__(self) -> None:
        self._sessions: dict[str, list[Message]] = {}

    async def load(self, session_id: str) -> list[Message] | None:
        messages = self._sessions.get(session_id)
        return list(messages) if messages is not None else None

    async def save(self, session_id: str, messages: list[Message]) -> None:
        self._sessions[session_id] = list(messages)

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
