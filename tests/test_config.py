"""Tests for configuration guards on development-only variants."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from hpi_identity.config import (
    Environment,
    SessionGatePolicy,
    Settings,
    WebhookSecretPolicy,
)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_are_strict():
    config = _settings()

    assert config.environment is Environment.PRODUCTION
    assert config.webhook_secret_policy is WebhookSecretPolicy.REQUIRED
    assert config.session_gate_policy is SessionGatePolicy.ENFORCE
    assert config.otp_diagnostics is False
    assert config.otp_lifetime_seconds == 600
    assert config.otp_max_attempts == 3
    assert config.otp_resend_cooldown_seconds == 60
    assert config.session_grace_seconds == 300
    assert config.sweep_interval_seconds == 300


@pytest.mark.parametrize(
    "overrides",
    [
        {"webhook_secret_policy": "allow_unsigned"},
        {"session_gate_policy": "local_bypass"},
        {"otp_diagnostics": True},
    ],
)
def test_permissive_variants_rejected_in_production(overrides):
    with pytest.raises(ValidationError):
        _settings(**overrides)


def test_permissive_variants_allowed_in_development():
    config = _settings(
        environment="development",
        webhook_secret_policy="allow_unsigned",
        session_gate_policy="local_bypass",
        otp_diagnostics=True,
    )

    assert config.webhook_secret_policy is WebhookSecretPolicy.ALLOW_UNSIGNED
    assert config.session_gate_policy is SessionGatePolicy.LOCAL_BYPASS


def test_twilio_configured_requires_all_credentials():
    assert not _settings(twilio_account_sid="AC1", twilio_auth_token="t").twilio_configured
    assert _settings(
        twilio_account_sid="AC1", twilio_auth_token="t", twilio_phone_number="+15550000000"
    ).twilio_configured


def test_session_roles_load_from_json_env(monkeypatch):
    monkeypatch.setenv("SESSION_ROLES", '{"+15559876543": "admin"}')

    assert _settings().session_roles == {"+15559876543": "admin"}
    assert _settings().local_dev_role == "doctor"
