"""OTP engine — issues, resends and verifies one-time phone challenges.

Per identity the engine walks ``NONE → PENDING → {VERIFIED, EXPIRED, LOCKED}``.
Every read-modify-write of a challenge happens under the store's lock for
that identity; SMS delivery and session issuance happen after the lock is
released so a slow collaborator never blocks other callers.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from hpi_identity.clock import Clock, SystemClock
from hpi_identity.errors import (
    CooldownError,
    ExpiredError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from hpi_identity.models.challenge import Challenge
from hpi_identity.models.session import SessionDescriptor
from hpi_identity.services.challenge_store import ChallengeStore
from hpi_identity.services.phone import normalize_phone
from hpi_identity.services.session_manager import IdentityProvider
from hpi_identity.services.sms_dispatcher import SmsDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OTPPolicy:
    """Bounds applied by the engine; defaults match the production settings."""

    code_length: int = 6
    lifetime_seconds: int = 600
    max_attempts: int = 3
    resend_cooldown_seconds: int = 60
    dispatch_timeout_seconds: float = 5.0

    @property
    def lifetime(self) -> timedelta:
        return timedelta(seconds=self.lifetime_seconds)

    @property
    def resend_cooldown(self) -> timedelta:
        return timedelta(seconds=self.resend_cooldown_seconds)


@dataclass(frozen=True)
class IssueReceipt:
    """Acknowledgement of an issuance; carries the code only in diagnostics mode."""

    identity: str
    delivered: bool
    expires_at: datetime
    diagnostic_code: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class VerificationGrant:
    identity: str
    session: SessionDescriptor


class OTPEngine:
    """Issue, resend and verify challenges against a :class:`ChallengeStore`."""

    def __init__(
        self,
        store: ChallengeStore,
        dispatcher: SmsDispatcher,
        identity_provider: IdentityProvider,
        clock: Clock | None = None,
        policy: OTPPolicy | None = None,
        expose_codes: bool = False,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._identity_provider = identity_provider
        self._clock = clock or SystemClock()
        self._policy = policy or OTPPolicy()
        self._expose_codes = expose_codes

    @property
    def policy(self) -> OTPPolicy:
        return self._policy

    # ── Public operations ────────────────────────────────

    async def issue_challenge(self, identity: str) -> IssueReceipt:
        """Create a fresh challenge for *identity* and dispatch its code."""
        identity = normalize_phone(identity)
        async with self._store.lock(identity):
            challenge = self._replace_challenge(identity)
        logger.info("Challenge issued for %s", identity)
        return await self._dispatch(challenge)

    async def resend_challenge(self, identity: str) -> IssueReceipt:
        """Replace the challenge for *identity* once the cooldown has elapsed."""
        identity = normalize_phone(identity)
        async with self._store.lock(identity):
            last = self._store.last_issued_at(identity)
            if last is not None:
                remaining = self._policy.resend_cooldown - (self._clock.now() - last)
                if remaining > timedelta(0):
                    retry_after = math.ceil(remaining.total_seconds())
                    logger.info("Resend refused for %s: cooldown %ss", identity, retry_after)
                    raise CooldownError(
                        "Please wait before requesting a new code", retry_after=retry_after
                    )
            challenge = self._replace_challenge(identity)
        logger.info("Challenge re-issued for %s", identity)
        return await self._dispatch(challenge)

    async def verify_challenge(self, identity: str, submitted_code: str) -> VerificationGrant:
        """Check *submitted_code* against the pending challenge for *identity*.

        On success the challenge is consumed and a session is requested from
        the identity provider. Failures raise one of the taxonomy errors.
        """
        if not self._well_formed_code(submitted_code):
            raise ValidationError(
                f"Code must be exactly {self._policy.code_length} digits"
            )
        identity = normalize_phone(identity)

        async with self._store.lock(identity):
            self._check_and_consume(identity, submitted_code)

        session = await self._identity_provider.issue_session(identity)
        logger.info("Challenge verified for %s", identity)
        return VerificationGrant(identity=identity, session=session)

    # ── Helpers (caller holds the identity lock) ─────────

    def _replace_challenge(self, identity: str) -> Challenge:
        challenge = Challenge(
            identity=identity,
            code=self._generate_code(),
            issued_at=self._clock.now(),
        )
        self._store.put(challenge)
        return challenge

    def _check_and_consume(self, identity: str, submitted_code: str) -> None:
        now = self._clock.now()
        challenge = self._store.get(identity)
        if challenge is None:
            marker = self._store.get_lockout(identity)
            if marker is not None:
                if now - marker.issued_at <= self._policy.lifetime:
                    logger.warning("Verification for locked identity %s", identity)
                    raise LockedError("Too many failed attempts")
                # Marker outlived the challenge lifetime.
                self._store.clear_lockout(identity)
            logger.info("Verification for %s without a pending challenge", identity)
            raise NotFoundError("No active code for this number")

        if now - challenge.issued_at > self._policy.lifetime:
            self._store.delete(identity)
            logger.info("Challenge expired for %s", identity)
            raise ExpiredError("Code expired")

        if challenge.attempts >= self._policy.max_attempts:
            self._store.lock_out(challenge)
            logger.warning("Challenge locked for %s", identity)
            raise LockedError("Too many failed attempts")

        if hmac.compare_digest(challenge.code.encode(), submitted_code.encode()):
            self._store.delete(identity)
            return

        challenge.attempts += 1
        remaining = self._policy.max_attempts - challenge.attempts
        if remaining <= 0:
            self._store.lock_out(challenge)
            logger.warning(
                "Wrong code for %s; attempt bound reached, challenge discarded", identity
            )
        else:
            logger.warning("Wrong code for %s; %d attempts remaining", identity, remaining)
        raise ValidationError("Invalid code", attempts_remaining=max(remaining, 0))

    # ── Dispatch (no lock held) ──────────────────────────

    async def _dispatch(self, challenge: Challenge) -> IssueReceipt:
        delivered = False
        try:
            delivered = bool(
                await asyncio.wait_for(
                    self._dispatcher.deliver(challenge.identity, challenge.code),
                    timeout=self._policy.dispatch_timeout_seconds,
                )
            )
        except TimeoutError:
            logger.error("Code delivery to %s timed out", challenge.identity)
        except Exception:
            logger.exception("Code delivery to %s failed", challenge.identity)

        if not delivered:
            logger.warning("Challenge for %s stored but not delivered", challenge.identity)

        return IssueReceipt(
            identity=challenge.identity,
            delivered=delivered,
            expires_at=challenge.issued_at + self._policy.lifetime,
            diagnostic_code=challenge.code if self._expose_codes else None,
        )

    # ── Codes ────────────────────────────────────────────

    def _generate_code(self) -> str:
        length = self._policy.code_length
        return f"{secrets.randbelow(10**length):0{length}d}"

    def _well_formed_code(self, code: object) -> bool:
        return (
            isinstance(code, str)
            and len(code) == self._policy.code_length
            and code.isascii()
            and code.isdigit()
        )
