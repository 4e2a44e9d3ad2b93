"""Tests for the OTPEngine — issuance, resend and verification flows."""

from __future__ import annotations

import asyncio

import pytest

from hpi_identity.clock import ManualClock
from hpi_identity.errors import (
    CooldownError,
    ExpiredError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from hpi_identity.services.challenge_store import ChallengeStore
from hpi_identity.services.otp_engine import OTPEngine, OTPPolicy
from hpi_identity.services.session_manager import SessionManager

P1 = "+15551234567"


class RecordingDispatcher:
    """Captures every delivery instead of sending an SMS."""

    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[tuple[str, str]] = []

    async def deliver(self, identity: str, code: str) -> bool:
        self.sent.append((identity, code))
        return self.result

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return ChallengeStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(store, dispatcher, clock):
    return OTPEngine(
        store=store,
        dispatcher=dispatcher,
        identity_provider=SessionManager(clock=clock),
        clock=clock,
    )


# ──────────────────────────────────────────────────────────
# Issuance
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_issue_stores_and_dispatches(engine, store, dispatcher, clock):
    receipt = await engine.issue_challenge("(555) 123-4567")

    assert receipt.identity == P1
    assert receipt.delivered is True
    assert receipt.diagnostic_code is None
    assert receipt.expires_at == clock.now() + engine.policy.lifetime

    code = dispatcher.last_code
    assert len(code) == 6 and code.isdigit()
    assert store.get(P1).attempts == 0


@pytest.mark.asyncio
async def test_issue_replaces_previous_challenge(engine, store, dispatcher):
    await engine.issue_challenge(P1)
    first = dispatcher.last_code
    store.get(P1).attempts = 2

    await engine.issue_challenge(P1)

    assert len(store) == 1
    assert store.get(P1).attempts == 0
    assert store.get(P1).code == dispatcher.last_code
    assert len(dispatcher.sent) == 2
    assert dispatcher.sent[0][1] == first


@pytest.mark.asyncio
async def test_issue_rejects_malformed_identity(engine, store, dispatcher):
    with pytest.raises(ValidationError):
        await engine.issue_challenge("not-a-phone")
    with pytest.raises(ValidationError):
        await engine.issue_challenge("")
    assert len(store) == 0
    assert dispatcher.sent == []


@pytest.mark.asyncio
async def test_failed_delivery_still_records_challenge(store, clock):
    engine = OTPEngine(store, RecordingDispatcher(result=False), SessionManager(clock=clock), clock)

    receipt = await engine.issue_challenge(P1)

    assert receipt.delivered is False
    assert P1 in store


@pytest.mark.asyncio
async def test_dispatch_exception_reports_failure(store, clock):
    class Broken:
        async def deliver(self, identity, code):
            raise RuntimeError("provider down")

    engine = OTPEngine(store, Broken(), SessionManager(clock=clock), clock)

    receipt = await engine.issue_challenge(P1)

    assert receipt.delivered is False
    assert P1 in store


@pytest.mark.asyncio
async def test_dispatch_timeout_keeps_challenge(store, clock):
    class Slow:
        async def deliver(self, identity, code):
            await asyncio.sleep(10)
            return True

    engine = OTPEngine(
        store,
        Slow(),
        SessionManager(clock=clock),
        clock,
        policy=OTPPolicy(dispatch_timeout_seconds=0.01),
    )

    receipt = await engine.issue_challenge(P1)

    assert receipt.delivered is False
    assert P1 in store


@pytest.mark.asyncio
async def test_dispatch_runs_without_holding_the_lock(store, clock):
    release = asyncio.Event()
    observed: list[bool] = []

    class Blocking:
        async def deliver(self, identity, code):
            observed.append(store.lock(identity).locked())
            await release.wait()
            return True

    engine = OTPEngine(store, Blocking(), SessionManager(clock=clock), clock)
    task = asyncio.create_task(engine.issue_challenge(P1))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    # Another caller can work on the same identity while delivery is in flight.
    with pytest.raises(ValidationError):
        await engine.verify_challenge(P1, _wrong(store.get(P1).code))
    release.set()
    await task

    assert observed == [False]


@pytest.mark.asyncio
async def test_diagnostic_mode_exposes_code(store, dispatcher, clock):
    engine = OTPEngine(store, dispatcher, SessionManager(clock=clock), clock, expose_codes=True)

    receipt = await engine.issue_challenge(P1)

    assert receipt.diagnostic_code == dispatcher.last_code


# ──────────────────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_correct_code_grants_session_and_consumes(engine, store, dispatcher):
    await engine.issue_challenge(P1)

    grant = await engine.verify_challenge(P1, dispatcher.last_code)

    assert grant.identity == P1
    assert grant.session.subject == P1
    assert grant.session.expires_at is not None
    assert P1 not in store

    with pytest.raises(NotFoundError):
        await engine.verify_challenge(P1, dispatcher.last_code)


@pytest.mark.asyncio
async def test_unknown_identity_is_not_found(engine):
    with pytest.raises(NotFoundError):
        await engine.verify_challenge(P1, "123456")


@pytest.mark.asyncio
async def test_malformed_code_does_not_touch_challenge(engine, store):
    await engine.issue_challenge(P1)

    for bad in ("12345", "1234567", "12a456", "١٢٣٤٥٦"):
        with pytest.raises(ValidationError) as info:
            await engine.verify_challenge(P1, bad)
        assert info.value.attempts_remaining is None

    assert store.get(P1).attempts == 0


@pytest.mark.asyncio
async def test_wrong_codes_count_down_then_lock(engine, store, dispatcher):
    """Three wrong codes, then even the right one is locked out."""
    await engine.issue_challenge(P1)
    code = dispatcher.last_code

    remaining = []
    for _ in range(3):
        with pytest.raises(ValidationError) as info:
            await engine.verify_challenge(P1, _wrong(code))
        remaining.append(info.value.attempts_remaining)

    assert remaining == [2, 1, 0]
    assert P1 not in store

    with pytest.raises(LockedError):
        await engine.verify_challenge(P1, code)


@pytest.mark.asyncio
async def test_attempts_never_exceed_bound(engine, store, dispatcher):
    await engine.issue_challenge(P1)
    code = dispatcher.last_code

    seen = []
    for _ in range(2):
        with pytest.raises(ValidationError):
            await engine.verify_challenge(P1, _wrong(code))
        seen.append(store.get(P1).attempts)

    assert seen == [1, 2]
    assert all(a <= engine.policy.max_attempts for a in seen)


@pytest.mark.asyncio
async def test_expired_challenge_rejects_correct_code(engine, store, dispatcher, clock):
    """Eleven minutes later the right code is expired."""
    await engine.issue_challenge(P1)
    clock.advance(minutes=11)

    with pytest.raises(ExpiredError):
        await engine.verify_challenge(P1, dispatcher.last_code)
    assert P1 not in store


@pytest.mark.asyncio
async def test_challenge_valid_up_to_lifetime(engine, dispatcher, clock):
    await engine.issue_challenge(P1)
    clock.advance(seconds=600)

    grant = await engine.verify_challenge(P1, dispatcher.last_code)
    assert grant.identity == P1


@pytest.mark.asyncio
async def test_concurrent_wrong_codes_each_count_once(engine, store, dispatcher):
    await engine.issue_challenge(P1)
    wrong = _wrong(dispatcher.last_code)

    results = await asyncio.gather(
        engine.verify_challenge(P1, wrong),
        engine.verify_challenge(P1, wrong),
        return_exceptions=True,
    )

    assert all(isinstance(r, ValidationError) for r in results)
    assert sorted(r.attempts_remaining for r in results) == [1, 2]
    assert store.get(P1).attempts == 2


@pytest.mark.asyncio
async def test_concurrent_correct_codes_grant_once(engine, dispatcher):
    await engine.issue_challenge(P1)
    code = dispatcher.last_code

    results = await asyncio.gather(
        engine.verify_challenge(P1, code),
        engine.verify_challenge(P1, code),
        return_exceptions=True,
    )

    granted = [r for r in results if not isinstance(r, Exception)]
    assert len(granted) == 1
    assert any(isinstance(r, NotFoundError) for r in results)


# ──────────────────────────────────────────────────────────
# Resend
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_immediate_resend_hits_cooldown(engine):
    """Resend straight after issuance waits about a minute."""
    await engine.issue_challenge(P1)

    with pytest.raises(CooldownError) as info:
        await engine.resend_challenge(P1)
    assert info.value.retry_after == 60


@pytest.mark.asyncio
async def test_cooldown_counts_down(engine, clock):
    await engine.issue_challenge(P1)
    clock.advance(seconds=30.5)

    with pytest.raises(CooldownError) as info:
        await engine.resend_challenge(P1)
    assert info.value.retry_after == 30


@pytest.mark.asyncio
async def test_resend_after_cooldown_invalidates_old_code(engine, store, dispatcher, clock):
    await engine.issue_challenge(P1)
    old = dispatcher.last_code
    store.get(P1).attempts = 1
    clock.advance(seconds=60)

    receipt = await engine.resend_challenge(P1)
    new = dispatcher.last_code

    assert receipt.delivered is True
    assert store.get(P1).attempts == 0
    assert store.get(P1).issued_at == clock.now()
    if old != new:
        with pytest.raises(ValidationError):
            await engine.verify_challenge(P1, old)
    grant = await engine.verify_challenge(P1, new)
    assert grant.identity == P1


@pytest.mark.asyncio
async def test_resend_without_prior_challenge_issues(engine, dispatcher):
    receipt = await engine.resend_challenge(P1)

    assert receipt.delivered is True
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_locked_identity_can_resend_after_cooldown(engine, store, dispatcher, clock):
    await engine.issue_challenge(P1)
    code = dispatcher.last_code
    for _ in range(3):
        with pytest.raises(ValidationError):
            await engine.verify_challenge(P1, _wrong(code))

    with pytest.raises(CooldownError):
        await engine.resend_challenge(P1)

    clock.advance(seconds=61)
    await engine.resend_challenge(P1)

    assert store.get_lockout(P1) is None
    grant = await engine.verify_challenge(P1, dispatcher.last_code)
    assert grant.identity == P1


@pytest.mark.asyncio
async def test_lockout_lapses_after_lifetime(engine, store, dispatcher, clock):
    await engine.issue_challenge(P1)
    code = dispatcher.last_code
    for _ in range(3):
        with pytest.raises(ValidationError):
            await engine.verify_challenge(P1, _wrong(code))

    clock.advance(seconds=600)
    with pytest.raises(LockedError):
        await engine.verify_challenge(P1, code)

    clock.advance(hours=5)
    with pytest.raises(NotFoundError):
        await engine.verify_challenge(P1, code)
    assert store.get_lockout(P1) is None


# ──────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_codes_never_reach_the_logs(engine, dispatcher, clock, monkeypatch, caplog):
    codes = iter(["918273", "827364"])
    monkeypatch.setattr(engine, "_generate_code", lambda: next(codes))

    with caplog.at_level("DEBUG"):
        await engine.issue_challenge(P1)
        first = dispatcher.last_code
        for _ in range(3):
            with pytest.raises(ValidationError):
                await engine.verify_challenge(P1, _wrong(first))
        with pytest.raises(LockedError):
            await engine.verify_challenge(P1, first)

        clock.advance(seconds=61)
        dispatcher.result = False
        receipt = await engine.resend_challenge(P1)
        second = dispatcher.last_code
        await engine.verify_challenge(P1, second)

    assert receipt.delivered is False
    assert P1 in caplog.text
    assert first not in caplog.text
    assert second not in caplog.text
