"""Bearer tokens for public tracking links.

A tracking link is ``<base>/session/<id>?token=<token>`` and the token
is the only credential guarding it, so tokens come from :mod:`secrets`.
Tokens younger than the reuse window are handed back unchanged so that
links already sent to contacts keep working during a broadcast; older
tokens are rotated.
"""

from __future__ import annotations

import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final

import structlog

from lifeline.models.session import EmergencySession, utcnow

logger = structlog.get_logger(__name__)

_ALPHABET: Final[str] = string.ascii_letters + string.digits
DEFAULT_TOKEN_LENGTH: Final[int] = 16
DEFAULT_REUSE_WINDOW: Final[timedelta] = timedelta(hours=12)


@dataclass(frozen=True, slots=True)
class TokenGrant:
    token: str
    created_at: datetime
    rotated: bool  # True when the caller must persist the new token


class TokenMinter:
    """Mints and rotates tracking-link bearer tokens.

    Parameters
    ----------
    length:
        Number of alphanumeric characters per token.
    reuse_window:
        Tokens created less than this long ago are reused.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    __slots__ = ("_clock", "_length", "_reuse_window")

    def __init__(
        self,
        *,
        length: int = DEFAULT_TOKEN_LENGTH,
        reuse_window: timedelta = DEFAULT_REUSE_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._length = length
        self._reuse_window = reuse_window
        self._clock = clock

    def mint(self, seed: str | None = None) -> str:
        """Return a fresh random token.

        *seed* only tags the log event; it never influences the token.
        """
        token = "".join(secrets.choice(_ALPHABET) for _ in range(self._length))
        logger.debug("token_minter.minted", seed=seed, length=self._length)
        return token

    def ensure_fresh(self, session: EmergencySession) -> TokenGrant:
        """Reuse *session*'s token inside the reuse window, else mint a new one."""
        now = self._clock()
        age = now - session.token_created_at
        if session.access_token and age < self._reuse_window:
            return TokenGrant(session.access_token, session.token_created_at, rotated=False)

        logger.info(
            "token_minter.rotated",
            session_id=session.id,
            token_age_seconds=int(age.total_seconds()),
        )
        return TokenGrant(self.mint(session.id), now, rotated=True)
