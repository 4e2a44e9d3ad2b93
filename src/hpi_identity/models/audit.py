"""SQLAlchemy audit-trail model."""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


class AuditEvent(Base):
    """One verification-layer decision, kept for intrusion diagnosis.

    Rows record who, what and when. They never hold a one-time code, a
    session token, a signature digest or a secret.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(
        String(64), nullable=False, doc="Normalised phone number or webhook source"
    )
    action: Mapped[str] = mapped_column(
        String(32), nullable=False, doc="issue, resend, verify or webhook"
    )
    outcome: Mapped[str] = mapped_column(
        String(32), nullable=False, doc="ok, delivery_failed or an error kind"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("ix_audit_events_identity", "identity"),
        Index("ix_audit_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent id={self.id} identity={self.identity!r} "
            f"action={self.action!r} outcome={self.outcome!r}>"
        )
