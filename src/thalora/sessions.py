"""Session handle contract consumed by the authentication core."""

from __future__ import annotations

import secrets
from typing import Any, Protocol, runtime_checkable

USER_ID_KEY = "user_id"


@runtime_checkable
class Session(Protocol):
    """Small typed key-value state owned by the HTTP layer's session mechanism.

    ``id`` is the stable identity of the session and keys all server-side
    ceremony state. It must never be derived from request payloads.
    """

    @property
    def id(self) -> str: ...

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemorySession:
    """Dictionary backed :class:`Session`."""

    __slots__ = ("_data", "_id")

    def __init__(self, session_id: str | None = None, data: dict[str, Any] | None = None) -> None:
        self._id = session_id or secrets.token_urlsafe(24)
        self._data: dict[str, Any] = dict(data or {})

    @property
    def id(self) -> str:
        return self._id

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class MemorySessionStore:
    """Process-local registry of :class:`MemorySession` objects."""

    def __init__(self) -> None:
        self._sessions: dict[str, MemorySession] = {}

    def open(self, session_id: str | None = None) -> MemorySession:
        """Return the session for ``session_id``, creating a fresh one when unknown."""

        if session_id is not None:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
        session = MemorySession()
        self._sessions[session.id] = session
        return session

    def drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["USER_ID_KEY", "MemorySession", "MemorySessionStore", "Session"]
