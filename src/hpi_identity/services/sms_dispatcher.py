"""SMS dispatch — delivers one-time codes out of band.

The engine only relies on ``deliver(identity, code) -> bool``. Twilio is
called through its REST API with an async httpx client; when no
credentials are configured the unconfigured dispatcher reports failure so
issuance still records the challenge but tells the caller delivery failed.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from hpi_identity.config import Settings, settings
from hpi_identity.services.phone import mask_phone

logger = logging.getLogger(__name__)


class SmsDispatcher(Protocol):
    async def deliver(self, identity: str, code: str) -> bool:
        """Send *code* to *identity*; return ``True`` when the provider accepted it."""


class TwilioSmsDispatcher:
    """Async wrapper around the Twilio Messages API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        app_name: str = "InstantHPI",
        lifetime_minutes: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth = (account_sid, auth_token)
        self._from = from_number
        self._base_url = base_url.rstrip("/")
        self._app_name = app_name
        self._lifetime_minutes = lifetime_minutes
        self._transport = transport

    def _body(self, code: str) -> str:
        return (
            f"Your {self._app_name} verification code is: {code}. "
            f"Valid for {self._lifetime_minutes} minutes."
        )

    async def deliver(self, identity: str, code: str) -> bool:
        url = f"{self._base_url}/Accounts/{self._account_sid}/Messages.json"
        data = {"To": identity, "From": self._from, "Body": self._body(code)}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(url, data=data, auth=self._auth)
        except httpx.HTTPError as exc:
            logger.error("SMS request to %s failed: %s", mask_phone(identity), exc)
            return False

        if resp.status_code in (200, 201):
            logger.info(
                "SMS sent to %s (sid=%s)", mask_phone(identity), _message_sid(resp)
            )
            return True
        # Twilio error bodies describe the request, not the message text.
        logger.error(
            "SMS to %s rejected: %s %s", mask_phone(identity), resp.status_code, resp.text
        )
        return False


def _message_sid(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return ""
    return body.get("sid", "") if isinstance(body, dict) else ""


class UnconfiguredDispatcher:
    """Stand-in used when no SMS provider is configured; never delivers."""

    async def deliver(self, identity: str, code: str) -> bool:
        logger.warning(
            "No SMS provider configured; code for %s was not delivered", mask_phone(identity)
        )
        return False


def build_dispatcher(config: Settings = settings) -> SmsDispatcher:
    """Pick the dispatcher matching *config*."""
    if config.twilio_configured:
        return TwilioSmsDispatcher(
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            from_number=config.twilio_phone_number,
            base_url=config.twilio_api_base_url,
            lifetime_minutes=max(1, config.otp_lifetime_seconds // 60),
        )
    logger.warning("TWILIO_* settings missing — SMS delivery disabled")
    return UnconfiguredDispatcher()
