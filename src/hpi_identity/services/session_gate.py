"""Session validity gate — decides, per request, whether a session is good.

The gate is a pure async function over the presented descriptor. It keeps
no state between calls and consults the identity provider only to attempt
one refresh of a session that expired within the grace window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from hpi_identity.clock import Clock
from hpi_identity.errors import IdentityError
from hpi_identity.models.session import SessionDescriptor
from hpi_identity.services.session_manager import SessionRefresher

logger = logging.getLogger(__name__)

# Decision paths
PATH_MISSING = "missing"
PATH_NO_EXPIRY = "no_expiry"
PATH_VALID = "valid"
PATH_REFRESHED = "refreshed"
PATH_REFRESH_FAILED = "refresh_failed"
PATH_REFRESH_UNAVAILABLE = "refresh_unavailable"
PATH_STALE = "stale"


@dataclass(frozen=True)
class GateDecision:
    admitted: bool
    path: str
    descriptor: SessionDescriptor | None = None

    @property
    def refreshed(self) -> bool:
        return self.path == PATH_REFRESHED


async def evaluate_session(
    descriptor: SessionDescriptor | None,
    *,
    clock: Clock,
    refresher: SessionRefresher,
    grace_seconds: float,
) -> GateDecision:
    """Return the gate's decision for *descriptor*.

    Rules, in order: no descriptor or no ``expires_at`` is denied; an
    unexpired session is admitted; a session expired for no longer than
    the grace window gets exactly one refresh attempt; anything older is
    denied without a refresh.
    """
    decision = await _decide(descriptor, clock, refresher, timedelta(seconds=grace_seconds))
    subject = descriptor.subject if descriptor is not None else "-"
    logger.info(
        "session_gate subject=%s path=%s admitted=%s",
        subject,
        decision.path,
        decision.admitted,
    )
    return decision


async def _decide(
    descriptor: SessionDescriptor | None,
    clock: Clock,
    refresher: SessionRefresher,
    grace: timedelta,
) -> GateDecision:
    if descriptor is None:
        return GateDecision(admitted=False, path=PATH_MISSING)
    if descriptor.expires_at is None:
        return GateDecision(admitted=False, path=PATH_NO_EXPIRY)

    now = clock.now()
    if descriptor.expires_at > now:
        return GateDecision(admitted=True, path=PATH_VALID, descriptor=descriptor)

    if now - descriptor.expires_at > grace:
        return GateDecision(admitted=False, path=PATH_STALE)

    if not descriptor.can_refresh:
        return GateDecision(admitted=False, path=PATH_REFRESH_UNAVAILABLE)

    try:
        renewed = await refresher.refresh(descriptor)
    except IdentityError as exc:
        logger.info("Session refresh for %s failed: %s", descriptor.subject, exc.kind)
        return GateDecision(admitted=False, path=PATH_REFRESH_FAILED)
    except Exception:
        logger.exception("Session refresh for %s raised", descriptor.subject)
        return GateDecision(admitted=False, path=PATH_REFRESH_FAILED)

    # Re-read the clock: the refresh call may have taken time.
    if renewed.expires_at is None or renewed.expires_at <= clock.now():
        return GateDecision(admitted=False, path=PATH_REFRESH_FAILED)
    return GateDecision(admitted=True, path=PATH_REFRESHED, descriptor=renewed)
