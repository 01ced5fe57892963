"""Session-scoped storage for pending registration and login ceremonies."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from time import monotonic

from .challenges import ChallengeGenerator
from .exceptions import CeremonyExpired, NotFound
from .models import CeremonyKind, PendingCeremony

logger = logging.getLogger(__name__)


class CeremonyStore:
    """Keep at most one pending ceremony per ``(session_id, kind)``.

    Entries are consumed with :meth:`take`, which removes and returns them in
    a single step so a challenge can be checked at most once. Entries older
    than ``ttl_seconds`` on the monotonic clock are rejected with
    :class:`CeremonyExpired`.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60,
        generator: ChallengeGenerator | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.generator = generator or ChallengeGenerator()
        self._clock = clock or monotonic
        self._pending: dict[tuple[str, CeremonyKind], PendingCeremony] = {}
        self._lock = asyncio.Lock()

    async def begin_registration(self, session_id: str, username: str, email: str) -> PendingCeremony:
        """Store a fresh registration ceremony, replacing any earlier one for ``session_id``."""

        async with self._lock:
            now = self._clock()
            self._prune_expired(now)
            ceremony = PendingCeremony(
                kind=CeremonyKind.REGISTRATION,
                challenge=self.generator.generate_challenge(),
                user_handle=self.generator.generate_user_handle(),
                username=username,
                email=email,
                created_at=now,
            )
            self._pending[(session_id, CeremonyKind.REGISTRATION)] = ceremony
            return ceremony

    async def begin_login(self, session_id: str, username: str, *, user_id: int | None = None) -> PendingCeremony:
        """Store a fresh login ceremony, replacing any earlier one for ``session_id``."""

        async with self._lock:
            now = self._clock()
            self._prune_expired(now)
            ceremony = PendingCeremony(
                kind=CeremonyKind.LOGIN,
                challenge=self.generator.generate_challenge(),
                username=username,
                user_id=user_id,
                created_at=now,
            )
            self._pending[(session_id, CeremonyKind.LOGIN)] = ceremony
            return ceremony

    async def take_pending_registration(self, session_id: str) -> PendingCeremony:
        return await self.take(session_id, CeremonyKind.REGISTRATION)

    async def take_pending_login(self, session_id: str) -> PendingCeremony:
        return await self.take(session_id, CeremonyKind.LOGIN)

    async def take(self, session_id: str, kind: CeremonyKind) -> PendingCeremony:
        async with self._lock:
            ceremony = self._pending.pop((session_id, kind), None)
            if ceremony is None:
                raise NotFound(f"no pending {kind.value} ceremony")
            if self._expired(ceremony, self._clock()):
                raise CeremonyExpired(f"{kind.value} ceremony expired")
            return ceremony

    async def restore(self, session_id: str, ceremony: PendingCeremony) -> bool:
        """Put back a taken ceremony so the client may retry.

        Nothing happens if a newer ceremony of the same kind was begun in the
        meantime or if ``ceremony`` has expired.
        """

        async with self._lock:
            if self._expired(ceremony, self._clock()):
                return False
            key = (session_id, ceremony.kind)
            if key in self._pending:
                return False
            self._pending[key] = ceremony
            return True

    async def cancel(self, session_id: str, kind: CeremonyKind | None = None) -> bool:
        """Drop pending ceremonies for ``session_id``; all kinds when ``kind`` is ``None``."""

        kinds = tuple(CeremonyKind) if kind is None else (kind,)
        async with self._lock:
            removed = [self._pending.pop((session_id, item), None) for item in kinds]
        return any(entry is not None for entry in removed)

    async def discard_session(self, session_id: str) -> int:
        async with self._lock:
            keys = [key for key in self._pending if key[0] == session_id]
            for key in keys:
                del self._pending[key]
        return len(keys)

    async def prune(self) -> int:
        async with self._lock:
            return self._prune_expired(self._clock())

    def __len__(self) -> int:
        return len(self._pending)

    def _expired(self, ceremony: PendingCeremony, now: float) -> bool:
        return now - ceremony.created_at >= self.ttl_seconds

    def _prune_expired(self, now: float) -> int:
        expired = [key for key, ceremony in self._pending.items() if self._expired(ceremony, now)]
        for key in expired:
            self._pending.pop(key, None)
        if expired:
            logger.debug("Pruned %d expired ceremonies", len(expired))
        return len(expired)


__all__ = ["CeremonyStore"]
