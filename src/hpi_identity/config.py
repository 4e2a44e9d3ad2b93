"""HPI Identity — configuration loaded from environment."""

from enum import Enum

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"


class WebhookSecretPolicy(str, Enum):
    """What to do with an inbound webhook when no signing secret is configured."""

    REQUIRED = "required"
    ALLOW_UNSIGNED = "allow_unsigned"


class SessionGatePolicy(str, Enum):
    """Whether protected routes check sessions or admit a local dev subject."""

    ENFORCE = "enforce"
    LOCAL_BYPASS = "local_bypass"


class SignatureEncoding(str, Enum):
    HEX = "hex"
    BASE64 = "base64"


class Settings(BaseSettings):
    """Application-wide settings, loaded from .env or environment variables.

    Every permissive variant defaults to the strict one and is refused at
    load time unless ``environment`` is ``development``.
    """

    # ── Deployment ────────────────────────────────────────
    environment: Environment = Environment.PRODUCTION
    app_name: str = "HPI Identity"
    debug: bool = False

    # ── Database (audit trail) ────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./hpi_identity.db"

    # ── One-time codes ────────────────────────────────────
    otp_code_length: int = 6
    otp_lifetime_seconds: int = 600
    otp_max_attempts: int = 3
    otp_resend_cooldown_seconds: int = 60
    otp_dispatch_timeout_seconds: float = 5.0
    otp_diagnostics: bool = False

    # ── Background sweep ──────────────────────────────────
    sweep_interval_seconds: float = 300.0

    # ── Sessions ──────────────────────────────────────────
    session_ttl_seconds: int = 3600
    session_grace_seconds: int = 300
    session_gate_policy: SessionGatePolicy = SessionGatePolicy.ENFORCE
    local_dev_subject: str = "local-dev-user"
    local_dev_role: str = "doctor"
    # normalised phone number → role; everyone else is "user"
    session_roles: dict[str, str] = {}

    # ── Inbound webhooks ──────────────────────────────────
    spruce_webhook_secret: str = ""
    webhook_secret_policy: WebhookSecretPolicy = WebhookSecretPolicy.REQUIRED
    webhook_signature_encoding: SignatureEncoding = SignatureEncoding.HEX

    # ── Twilio SMS ────────────────────────────────────────
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_api_base_url: str = "https://api.twilio.com/2010-04-01"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def _development_only_variants(self) -> "Settings":
        if self.environment is Environment.DEVELOPMENT:
            return self
        offending = []
        if self.webhook_secret_policy is not WebhookSecretPolicy.REQUIRED:
            offending.append("webhook_secret_policy")
        if self.session_gate_policy is not SessionGatePolicy.ENFORCE:
            offending.append("session_gate_policy")
        if self.otp_diagnostics:
            offending.append("otp_diagnostics")
        if offending:
            raise ValueError(
                f"{', '.join(offending)} may only be relaxed when environment=development"
            )
        return self

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number
        )


# Singleton settings instance
settings = Settings()
