"""JSON rendering of verification-layer errors."""

from __future__ import annotations

from fastapi.responses import JSONResponse

from hpi_identity.errors import CooldownError, IdentityError


def error_response(exc: IdentityError) -> JSONResponse:
    """Render *exc* as ``{"success": false, "error": kind, "message": ...}``."""
    content = {"success": False, "error": exc.kind, "message": exc.message, **exc.metadata}
    headers = None
    if isinstance(exc, CooldownError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)
