"""Session descriptors handed out by the identity provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class SessionDescriptor:
    """A caller's claimed authentication state.

    ``expires_at`` is optional at the type level because descriptors come
    from outside this layer; the session gate never admits one without it.
    Tokens are kept out of ``repr`` so a descriptor can be logged safely.
    ``role`` gates routes that need more than a signed-in caller.
    """

    subject: str
    expires_at: datetime | None
    access_token: str = field(default="", repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    role: str = "user"

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)
