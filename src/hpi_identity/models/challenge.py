"""Pending verification challenges and lockout markers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Challenge:
    """A time-boxed, single-use code bound to one identity."""

    identity: str
    code: str = field(repr=False)
    issued_at: datetime
    attempts: int = 0


@dataclass(frozen=True)
class Lockout:
    """Code-less record that an identity's last challenge hit the attempt bound."""

    identity: str
    issued_at: datetime
