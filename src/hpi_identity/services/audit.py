"""Audit recorder — writes verification decisions to the audit trail."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hpi_identity.database.engine import async_session_factory
from hpi_identity.database.repository import AuditRepository
from hpi_identity.models.audit import AuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditSummary:
    """Recent events for one identity plus its failed verifications in a window."""

    identity: str
    failures: int
    events: list[AuditEvent] = field(default_factory=list)


class AuditRecorder:
    """Persists audit events in their own session and reads them back.

    Meant to run from FastAPI background tasks, after the response has been
    sent, so the verification path never waits on the database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    async def record(self, identity: str, action: str, outcome: str) -> None:
        try:
            async with self._session_factory() as session:
                await AuditRepository(session).record(identity[:64], action, outcome)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to record audit event %s/%s for %s", action, outcome, identity)
            return
        logger.debug("Audit event recorded: %s %s %s", identity, action, outcome)

    async def summary(self, identity: str, since: datetime, limit: int = 20) -> AuditSummary:
        """Read back the trail for *identity*; failures are counted from *since*."""
        async with self._session_factory() as session:
            repo = AuditRepository(session)
            events = await repo.recent_for_identity(identity, limit=limit)
            failures = await repo.count_failures_since(identity, since)
        return AuditSummary(identity=identity, failures=failures, events=events)
