"""Phone-number normalisation for challenge identities."""

from __future__ import annotations

import re

from hpi_identity.errors import ValidationError

_E164 = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone(phone: str) -> str:
    """Normalise *phone* to E.164 or raise :class:`ValidationError`.

    Punctuation is stripped, ten-digit North American numbers get a
    leading ``1`` and a ``+`` prefix is added.
    """
    if not isinstance(phone, str) or not phone.strip():
        raise ValidationError("Phone number is required")
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        digits = "1" + digits
    normalized = "+" + digits
    if not _E164.match(normalized):
        raise ValidationError("Phone number is not a valid international number")
    return normalized


def mask_phone(phone: str, visible_digits: int = 4) -> str:
    """Mask all but the last *visible_digits* digits: ``+*******4567``."""
    if len(phone) <= visible_digits + 1:
        return phone
    return phone[0] + "*" * (len(phone) - 1 - visible_digits) + phone[-visible_digits:]
