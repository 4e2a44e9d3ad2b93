"""Shared instances and FastAPI dependencies.

Instances are created once and reused across requests. Routes reach them
through the ``get_*`` functions so tests can swap them with
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import timedelta

from fastapi import Depends, Header, Response

from hpi_identity.clock import Clock, SystemClock
from hpi_identity.config import SessionGatePolicy, Settings, settings
from hpi_identity.errors import ForbiddenError, SessionExpiredError
from hpi_identity.models.session import SessionDescriptor
from hpi_identity.services.audit import AuditRecorder
from hpi_identity.services.challenge_store import ChallengeStore
from hpi_identity.services.otp_engine import OTPEngine, OTPPolicy
from hpi_identity.services.session_gate import evaluate_session
from hpi_identity.services.session_manager import SessionManager
from hpi_identity.services.sms_dispatcher import build_dispatcher
from hpi_identity.services.sweeper import Sweeper

logger = logging.getLogger(__name__)


def policy_from_settings(config: Settings) -> OTPPolicy:
    return OTPPolicy(
        code_length=config.otp_code_length,
        lifetime_seconds=config.otp_lifetime_seconds,
        max_attempts=config.otp_max_attempts,
        resend_cooldown_seconds=config.otp_resend_cooldown_seconds,
        dispatch_timeout_seconds=config.otp_dispatch_timeout_seconds,
    )


# ── Shared instances (created once, reused across requests) ──
_clock = SystemClock()
_challenge_store = ChallengeStore()
_session_manager = SessionManager(
    ttl_seconds=settings.session_ttl_seconds, clock=_clock, roles=settings.session_roles
)
_otp_engine = OTPEngine(
    store=_challenge_store,
    dispatcher=build_dispatcher(settings),
    identity_provider=_session_manager,
    clock=_clock,
    policy=policy_from_settings(settings),
    expose_codes=settings.otp_diagnostics,
)
_audit_recorder = AuditRecorder()


def build_sweeper(
    store: ChallengeStore,
    sessions: SessionManager,
    clock: Clock,
    config: Settings,
) -> Sweeper:
    """Sweeper that reaps expired challenges and dead sessions."""
    lifetime = timedelta(seconds=config.otp_lifetime_seconds)
    grace = timedelta(seconds=config.session_grace_seconds)

    async def sweep_challenges() -> int:
        return await store.sweep(clock.now(), lifetime)

    async def sweep_sessions() -> int:
        return await sessions.purge_expired(grace)

    return Sweeper(
        config.sweep_interval_seconds,
        jobs=[("challenges", sweep_challenges), ("sessions", sweep_sessions)],
    )


sweeper = build_sweeper(_challenge_store, _session_manager, _clock, settings)


def get_settings() -> Settings:
    return settings


def get_clock() -> Clock:
    return _clock


def get_otp_engine() -> OTPEngine:
    return _otp_engine


def get_session_manager() -> SessionManager:
    return _session_manager


def get_audit_recorder() -> AuditRecorder:
    return _audit_recorder


# ──────────────────────────────────────────────────────────────
# Session gate as a route dependency
# ──────────────────────────────────────────────────────────────
def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_session(
    response: Response,
    authorization: str | None = Header(default=None),
    x_refresh_token: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
    sessions: SessionManager = Depends(get_session_manager),
) -> SessionDescriptor:
    """Admit the request's session or raise :class:`SessionExpiredError`.

    An expired session is only refreshed when the caller also presents the
    refresh token issued with it, in the ``X-Refresh-Token`` header.
    """
    if config.session_gate_policy is SessionGatePolicy.LOCAL_BYPASS:
        logger.warning("Session gate bypassed for local development")
        return SessionDescriptor(
            subject=config.local_dev_subject,
            expires_at=clock.now() + timedelta(seconds=config.session_ttl_seconds),
            role=config.local_dev_role,
        )

    token = _bearer_token(authorization)
    stored = sessions.lookup(token) if token else None
    descriptor = replace(stored, refresh_token=x_refresh_token or None) if stored else None
    decision = await evaluate_session(
        descriptor,
        clock=clock,
        refresher=sessions,
        grace_seconds=config.session_grace_seconds,
    )
    if not decision.admitted or decision.descriptor is None:
        raise SessionExpiredError("Please sign in again")

    if decision.refreshed:
        renewed = decision.descriptor
        response.headers["X-Session-Token"] = renewed.access_token
        if renewed.refresh_token:
            response.headers["X-Session-Refresh-Token"] = renewed.refresh_token
        response.headers["X-Session-Expires-At"] = renewed.expires_at.isoformat()
    return decision.descriptor


def require_role(role: str) -> Callable[..., Awaitable[SessionDescriptor]]:
    """Dependency admitting only sessions that carry *role*.

    Usage::

        @router.get("/admin", dependencies=[Depends(require_role("admin"))])
    """

    async def dependency(
        session: SessionDescriptor = Depends(require_session),
    ) -> SessionDescriptor:
        if session.role != role:
            logger.warning(
                "Role %s required; %s has role %s", role, session.subject, session.role
            )
            raise ForbiddenError("Insufficient permissions")
        return session

    return dependency
