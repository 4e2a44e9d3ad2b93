"""Session manager — issues, resolves and refreshes session descriptors."""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Protocol

from hpi_identity.clock import Clock, SystemClock
from hpi_identity.errors import RefreshError
from hpi_identity.models.session import SessionDescriptor

logger = logging.getLogger(__name__)


class SessionRefresher(Protocol):
    async def refresh(self, descriptor: SessionDescriptor) -> SessionDescriptor:
        """Return a fresh descriptor or raise :class:`RefreshError`."""


class IdentityProvider(SessionRefresher, Protocol):
    async def issue_session(self, identity: str) -> SessionDescriptor:
        """Create a session for a freshly verified identity."""


class SessionManager:
    """In-memory session store keyed by access token.

    A refresh must present the access token and the refresh token handed
    out together; the pair rotates on every refresh, so the old tokens stop
    working as soon as a new pair is issued. Roles come from *roles*, keyed
    by subject. For production deployments, swap to a Redis-backed
    implementation by sub-classing and overriding the ``_save`` / ``_drop``
    hooks.
    """

    def __init__(
        self,
        ttl_seconds: int = 3600,
        clock: Clock | None = None,
        roles: Mapping[str, str] | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._roles = dict(roles or {})
        self._sessions: dict[str, SessionDescriptor] = {}

    async def issue_session(self, identity: str) -> SessionDescriptor:
        """Create a new session for *identity*."""
        descriptor = self._new_descriptor(identity)
        self._save(descriptor)
        logger.info("Session issued for %s", identity)
        return descriptor

    async def refresh(self, descriptor: SessionDescriptor) -> SessionDescriptor:
        """Exchange *descriptor*'s refresh token for a new session."""
        if not descriptor.refresh_token:
            raise RefreshError("Session has no refresh capability")
        current = self._sessions.get(descriptor.access_token)
        if (
            current is None
            or current.subject != descriptor.subject
            or not current.refresh_token
            or not hmac.compare_digest(
                current.refresh_token.encode(), descriptor.refresh_token.encode()
            )
        ):
            logger.info("Refresh rejected for %s: token pair not recognised", descriptor.subject)
            raise RefreshError("Refresh token is not recognised")

        self._drop(current)
        renewed = self._new_descriptor(current.subject)
        self._save(renewed)
        logger.info("Session refreshed for %s", renewed.subject)
        return renewed

    def lookup(self, access_token: str) -> SessionDescriptor | None:
        """Resolve an access token to its descriptor, expired or not."""
        return self._sessions.get(access_token)

    def revoke(self, access_token: str) -> None:
        """Remove a session (e.g. on logout)."""
        descriptor = self._sessions.get(access_token)
        if descriptor is not None:
            self._drop(descriptor)
            logger.info("Session revoked for %s", descriptor.subject)

    async def purge_expired(self, grace: timedelta) -> int:
        """Forget sessions that expired more than *grace* ago."""
        cutoff = self._clock.now() - grace
        dead = [
            d for d in list(self._sessions.values())
            if d.expires_at is None or d.expires_at < cutoff
        ]
        for descriptor in dead:
            self._drop(descriptor)
        if dead:
            logger.info("Purged %d dead sessions", len(dead))
        return len(dead)

    # ── Storage hooks ────────────────────────────────────

    def _new_descriptor(self, subject: str) -> SessionDescriptor:
        now: datetime = self._clock.now()
        return SessionDescriptor(
            subject=subject,
            expires_at=now + self._ttl,
            access_token=secrets.token_hex(32),
            refresh_token=secrets.token_hex(32),
            role=self._roles.get(subject, "user"),
        )

    def _save(self, descriptor: SessionDescriptor) -> None:
        self._sessions[descriptor.access_token] = descriptor

    def _drop(self, descriptor: SessionDescriptor) -> None:
        self._sessions.pop(descriptor.access_token, None)
