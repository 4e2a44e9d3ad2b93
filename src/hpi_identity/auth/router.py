"""Phone verification routes.

Endpoints
---------
POST /auth/send-otp      → issue a code and send it by SMS
POST /auth/verify-otp    → check a code and open a session
POST /auth/resend-otp    → re-issue a code after the cooldown
GET  /auth/session       → describe the caller's session (protected)
POST /auth/logout        → revoke the caller's session (protected)
GET  /auth/health        → dispatch configuration flags
GET  /auth/audit/{phone} → audit trail for a number (admin role)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hpi_identity.clock import Clock
from hpi_identity.config import Settings
from hpi_identity.dependencies import (
    get_audit_recorder,
    get_clock,
    get_otp_engine,
    get_session_manager,
    get_settings,
    require_role,
    require_session,
)
from hpi_identity.errors import IdentityError
from hpi_identity.models.session import SessionDescriptor
from hpi_identity.responses import error_response
from hpi_identity.services.audit import AuditRecorder
from hpi_identity.services.otp_engine import IssueReceipt, OTPEngine
from hpi_identity.services.phone import mask_phone, normalize_phone
from hpi_identity.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Response / request models ────────────────────────────

class PhoneRequest(BaseModel):
    phone_number: str


class VerifyRequest(BaseModel):
    phone_number: str
    otp: str


class SendResponse(BaseModel):
    success: bool
    message: str
    phone_number: str
    expires_at: datetime
    dev_otp: str | None = None


class VerifyResponse(BaseModel):
    success: bool
    message: str
    phone_number: str
    token: str
    refresh_token: str | None
    expires_at: datetime | None


class SessionResponse(BaseModel):
    subject: str
    expires_at: datetime | None
    role: str


class AuditEventResponse(BaseModel):
    action: str
    outcome: str
    created_at: datetime


class AuditTrailResponse(BaseModel):
    phone_number: str
    failures: int
    window_minutes: int
    events: list[AuditEventResponse]


# ── Helpers ──────────────────────────────────────────────

def _send_response(receipt: IssueReceipt, sent_message: str) -> JSONResponse | SendResponse:
    body = SendResponse(
        success=receipt.delivered,
        message=sent_message if receipt.delivered else "Failed to send verification code",
        phone_number=mask_phone(receipt.identity),
        expires_at=receipt.expires_at,
        dev_otp=receipt.diagnostic_code,
    )
    if receipt.delivered:
        return body
    return JSONResponse(status_code=502, content=body.model_dump(mode="json"))


# ── Endpoints ────────────────────────────────────────────

@router.post("/send-otp", response_model=SendResponse)
async def send_otp(
    body: PhoneRequest,
    background_tasks: BackgroundTasks,
    engine: OTPEngine = Depends(get_otp_engine),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Issue a fresh code for the phone number and dispatch it."""
    try:
        receipt = await engine.issue_challenge(body.phone_number)
    except IdentityError as exc:
        background_tasks.add_task(audit.record, body.phone_number, "issue", exc.kind)
        return error_response(exc)
    outcome = "ok" if receipt.delivered else "delivery_failed"
    background_tasks.add_task(audit.record, receipt.identity, "issue", outcome)
    return _send_response(receipt, "Verification code sent")


@router.post("/resend-otp", response_model=SendResponse)
async def resend_otp(
    body: PhoneRequest,
    background_tasks: BackgroundTasks,
    engine: OTPEngine = Depends(get_otp_engine),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Re-issue a code once the resend cooldown has elapsed."""
    try:
        receipt = await engine.resend_challenge(body.phone_number)
    except IdentityError as exc:
        background_tasks.add_task(audit.record, body.phone_number, "resend", exc.kind)
        return error_response(exc)
    outcome = "ok" if receipt.delivered else "delivery_failed"
    background_tasks.add_task(audit.record, receipt.identity, "resend", outcome)
    return _send_response(receipt, "New verification code sent")


@router.post("/verify-otp", response_model=VerifyResponse)
async def verify_otp(
    body: VerifyRequest,
    background_tasks: BackgroundTasks,
    engine: OTPEngine = Depends(get_otp_engine),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Check a submitted code; on success open a session."""
    try:
        grant = await engine.verify_challenge(body.phone_number, body.otp)
    except IdentityError as exc:
        background_tasks.add_task(audit.record, body.phone_number, "verify", exc.kind)
        return error_response(exc)
    background_tasks.add_task(audit.record, grant.identity, "verify", "ok")
    return VerifyResponse(
        success=True,
        message="Phone number verified",
        phone_number=grant.identity,
        token=grant.session.access_token,
        refresh_token=grant.session.refresh_token,
        expires_at=grant.session.expires_at,
    )


@router.get("/session", response_model=SessionResponse)
async def current_session(session: SessionDescriptor = Depends(require_session)):
    """Describe the session that passed the gate."""
    return SessionResponse(
        subject=session.subject, expires_at=session.expires_at, role=session.role
    )


@router.post("/logout")
async def logout(
    session: SessionDescriptor = Depends(require_session),
    sessions: SessionManager = Depends(get_session_manager),
) -> dict:
    """Revoke the caller's session."""
    logger.info("Logout for %s", session.subject)
    if session.access_token:
        sessions.revoke(session.access_token)
    return {"success": True}


@router.get("/health")
async def auth_health(config: Settings = Depends(get_settings)) -> dict:
    """Report whether SMS dispatch is configured, without exposing credentials."""
    return {
        "success": True,
        "sms_configured": config.twilio_configured,
        "environment": config.environment.value,
    }


@router.get("/audit/{phone_number}", response_model=AuditTrailResponse)
async def audit_trail(
    phone_number: str,
    window_minutes: int = Query(default=60, ge=1, le=7 * 24 * 60),
    session: SessionDescriptor = Depends(require_role("admin")),
    audit: AuditRecorder = Depends(get_audit_recorder),
    clock: Clock = Depends(get_clock),
):
    """Recent decisions for a number and its failed verifications in the window."""
    identity = normalize_phone(phone_number)
    summary = await audit.summary(
        identity, since=clock.now() - timedelta(minutes=window_minutes)
    )
    logger.info("Audit trail for %s read by %s", identity, session.subject)
    return AuditTrailResponse(
        phone_number=identity,
        failures=summary.failures,
        window_minutes=window_minutes,
        events=[
            AuditEventResponse(action=e.action, outcome=e.outcome, created_at=e.created_at)
            for e in summary.events
        ],
    )
