"""Persistent per-user SOS sharing preferences."""

from __future__ import annotations

from typing import Final

import structlog
from pydantic import ValidationError

from lifeline.models.session import SOSSettings
from lifeline.services.local_store import LocalStore

logger = structlog.get_logger(__name__)

SETTINGS_KEY: Final[str] = "sos_settings"


class SOSSettingsStore:
    """Reads and writes :class:`SOSSettings` in the local key-value store.

    A missing or unreadable record yields the defaults (everything shared
    except free-text notes).
    """

    __slots__ = ("_local",)

    def __init__(self, local: LocalStore) -> None:
        self._local = local

    async def get_settings(self) -> SOSSettings:
        raw = await self._local.get(SETTINGS_KEY)
        if raw is None:
            return SOSSettings()
        try:
            return SOSSettings.model_validate(raw)
        except ValidationError:
            logger.warning("sos_settings.unreadable_record")
            return SOSSettings()

    async def save_settings(self, settings: SOSSettings) -> SOSSettings:
        await self._local.set(SETTINGS_KEY, settings.to_document())
        logger.info("sos_settings.saved", **settings.model_dump())
        return settings

    async def toggle(self, flag: str) -> SOSSettings:
        """Flip one ``share_*`` flag and persist the result."""
        current = await self.get_settings()
        if flag not in SOSSettings.model_fields:
            raise KeyError(flag)
        updated = current.model_copy(update={flag: not getattr(current, flag)})
        return await self.save_settings(updated)
