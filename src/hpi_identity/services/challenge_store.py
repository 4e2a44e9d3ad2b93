"""In-memory challenge store with per-identity serialisation."""

from __future__ import annotations

import asyncio
import logging
import zlib
from datetime import datetime, timedelta

from hpi_identity.models.challenge import Challenge, Lockout

logger = logging.getLogger(__name__)

DEFAULT_STRIPES = 64


class ChallengeStore:
    """Keyed store of pending challenges and lockout markers.

    Each identity hashes onto one of a fixed set of ``asyncio.Lock`` stripes.
    Callers that read and then modify an entry must hold
    :meth:`lock` for that identity across the whole sequence; the accessor
    methods themselves do not lock. The sweep takes the same stripes.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be positive")
        self._challenges: dict[str, Challenge] = {}
        self._lockouts: dict[str, Lockout] = {}
        self._locks = [asyncio.Lock() for _ in range(stripes)]

    def lock(self, identity: str) -> asyncio.Lock:
        """Return the lock guarding *identity*."""
        index = zlib.crc32(identity.encode("utf-8")) % len(self._locks)
        return self._locks[index]

    # ── Accessors (hold ``lock(identity)``) ──────────────

    def get(self, identity: str) -> Challenge | None:
        return self._challenges.get(identity)

    def put(self, challenge: Challenge) -> None:
        """Store *challenge*, replacing any entry and lockout for its identity."""
        self._challenges[challenge.identity] = challenge
        self._lockouts.pop(challenge.identity, None)

    def delete(self, identity: str) -> Challenge | None:
        return self._challenges.pop(identity, None)

    def lock_out(self, challenge: Challenge) -> Lockout:
        """Discard *challenge* and remember that its identity is locked."""
        self._challenges.pop(challenge.identity, None)
        marker = Lockout(identity=challenge.identity, issued_at=challenge.issued_at)
        self._lockouts[challenge.identity] = marker
        return marker

    def get_lockout(self, identity: str) -> Lockout | None:
        return self._lockouts.get(identity)

    def clear_lockout(self, identity: str) -> None:
        self._lockouts.pop(identity, None)

    def last_issued_at(self, identity: str) -> datetime | None:
        """When the most recent challenge for *identity* was issued, if known."""
        challenge = self._challenges.get(identity)
        if challenge is not None:
            return challenge.issued_at
        marker = self._lockouts.get(identity)
        return marker.issued_at if marker is not None else None

    def __len__(self) -> int:
        return len(self._challenges)

    def __contains__(self, identity: object) -> bool:
        return identity in self._challenges

    # ── Sweep ────────────────────────────────────────────

    async def sweep(self, now: datetime, lifetime: timedelta) -> int:
        """Remove challenges and lockouts issued more than *lifetime* ago.

        Returns the number of entries removed.
        """
        candidates = [
            identity
            for identity, challenge in list(self._challenges.items())
            if now - challenge.issued_at > lifetime
        ]
        candidates += [
            identity
            for identity, marker in list(self._lockouts.items())
            if now - marker.issued_at > lifetime
        ]

        removed = 0
        for identity in set(candidates):
            async with self.lock(identity):
                # Re-check under the lock; a foreground call may have replaced it.
                challenge = self._challenges.get(identity)
                if challenge is not None and now - challenge.issued_at > lifetime:
                    del self._challenges[identity]
                    removed += 1
                marker = self._lockouts.get(identity)
                if marker is not None and now - marker.issued_at > lifetime:
                    del self._lockouts[identity]
                    removed += 1

        if removed:
            logger.info("Swept %d expired challenge entries", removed)
        return removed
