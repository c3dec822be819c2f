"""Privacy middleware for the SOS service.

Tracking tokens are bearer credentials and phone numbers identify
emergency contacts, so neither may reach a log line in the clear.  This
module provides the masking helpers, a structlog processor that applies
them to every event, and an HTTP middleware adding no-store / privacy
headers to all responses.
"""

from __future__ import annotations

import re
from collections.abc import MutableMapping
from typing import Any, Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Masking
# ---------------------------------------------------------------------------

# International or local numbers: optional +, 8-15 digits, with spaces,
# dots or dashes in between.  Only the last 4 digits survive.
_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?<![\w])\+?\d(?:[\s.-]?\d){7,14}(?![\w])")

# ``token=...`` inside URLs (tracking links).
_URL_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(token=)([A-Za-z0-9_-]+)")

TOKEN_KEYS: Final[frozenset[str]] = frozenset(
    {"token", "access_token", "accessToken", "target_token", "push_token", "pushToken"}
)
PHONE_KEYS: Final[frozenset[str]] = frozenset({"phone", "phone_number", "phoneNumber", "recipient"})
_PASSTHROUGH_KEYS: Final[frozenset[str]] = frozenset({"event", "timestamp", "level"})


def mask_token(token: str) -> str:
    """``aB3dE6gH9jK2mN5p`` becomes ``****mN5p``."""
    if len(token) <= 4:
        return "****"
    return f"****{token[-4:]}"


def sanitize_phone(text: str) -> str:
    """Mask phone numbers in *text*, preserving only the last 4 digits.

    ``+1 415 555 0123`` becomes ``XXXXXX0123``.
    """

    def _mask(match: re.Match[str]) -> str:
        digits = re.sub(r"\D", "", match.group(0))
        return f"XXXXXX{digits[-4:]}"

    return _PHONE_PATTERN.sub(_mask, text)


def sanitize_link(text: str) -> str:
    """Mask the bearer token of any tracking link in *text*."""
    return _URL_TOKEN_PATTERN.sub(lambda m: m.group(1) + mask_token(m.group(2)), text)


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, str):
        if key in TOKEN_KEYS:
            return mask_token(value)
        if key in PHONE_KEYS:
            return sanitize_phone(value)
        return sanitize_phone(sanitize_link(value))
    if isinstance(value, dict):
        return {k: _redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_redact_value(key, v) for v in value]
    return value


def redact_sensitive(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking tokens and phone numbers in every event."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS:
            continue
        event_dict[key] = _redact_value(key, value)
    return event_dict


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class PrivacyHeadersMiddleware(BaseHTTPMiddleware):
    """Logs each request without its query string and marks every response
    as uncacheable.

    Tracking responses carry live location and medical details; no proxy or
    browser cache may keep them.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        logger.info(
            "request.incoming",
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), payment=(), interest-cohort=()"
        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"
        return response
