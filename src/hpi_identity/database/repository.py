"""Audit repository — data access layer for the security audit trail."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hpi_identity.models.audit import AuditEvent


class AuditRepository:
    """Encapsulates all database queries related to audit events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        identity: str,
        action: str,
        outcome: str,
        created_at: datetime | None = None,
    ) -> AuditEvent:
        """Add an event to the session; the caller commits."""
        event = AuditEvent(identity=identity, action=action, outcome=outcome)
        if created_at is not None:
            event.created_at = created_at
        self._session.add(event)
        await self._session.flush()
        return event

    async def recent_for_identity(self, identity: str, limit: int = 20) -> list[AuditEvent]:
        """Most recent events for *identity*, newest first."""
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.identity == identity)
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_failures_since(self, identity: str, since: datetime) -> int:
        """Number of non-``ok`` verify outcomes for *identity* since *since*."""
        stmt = select(func.count(AuditEvent.id)).where(
            AuditEvent.identity == identity,
            AuditEvent.action == "verify",
            AuditEvent.outcome != "ok",
            AuditEvent.created_at >= since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())
