"""Alerting emergency contacts: push delivery records and the SMS fallback.

Two channels reach a contact:

1. **Push** -- when the contact has registered a delivery token, a
   :class:`DeliveryRecord` (``sent=False``) is persisted for an external
   dispatch worker.  This module never waits for, or observes, delivery.
2. **SMS** -- the guaranteed channel.  A single message is composed for
   all contacts and handed to the device's SMS composer, whose outcome
   (sent / cancelled / unavailable) comes back synchronously.

The SMS body is assembled from a fixed, ordered table of optional
fields, so the order of the medical lines is part of the contract.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, Literal, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from lifeline.models.enums import FallbackAction, SmsStatus
from lifeline.models.session import DeliveryRecord, SharedProfile, SmsOutcome, SOSSettings, delivery_key
from lifeline.models.user_profile import EmergencyContact
from lifeline.services.document_store import DocumentStore
from lifeline.services.errors import SOSError

logger = structlog.get_logger(__name__)

RESPONDERS_COLLECTION: Final[str] = "emergency_responders"
PUSH_COLLECTION: Final[str] = "push_notifications"

SMS_PREAMBLE: Final[str] = "EMERGENCY SOS ALERT from {name}. I need help. Track my live location: {link}"
MANUAL_SHARE_TEXT: Final[str] = "EMERGENCY SOS ALERT. I need help. Track my live location: {link}"
PUSH_TITLE: Final[str] = "SOS EMERGENCY: {name}"
PUSH_BODY: Final[str] = "Needs your help! Tap to view their live location."


# ---------------------------------------------------------------------------
# External contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class DispatchChannel(Protocol):
    """Push dispatch: token directory plus a persistent outbound queue."""

    async def lookup_delivery_token(self, contact_id: str) -> str | None: ...

    async def enqueue(
        self, token: str, title: str, body: str, payload: dict[str, Any], *, key: str
    ) -> bool: ...


@runtime_checkable
class SmsComposer(Protocol):
    """The device's SMS composer."""

    async def is_available(self) -> bool: ...

    async def compose(self, recipients: Sequence[str], body: str) -> Literal["sent", "cancelled"]: ...


@runtime_checkable
class LocalNotifier(Protocol):
    """On-device notification shown to the person who raised the alert."""

    async def notify(self, title: str, body: str) -> None: ...


# ---------------------------------------------------------------------------
# Document-backed dispatch channel
# ---------------------------------------------------------------------------


class DocumentDispatchChannel:
    """Dispatch channel stored in the document store.

    Responders live in ``emergency_responders/{contactId}``; outbound
    pushes are written to ``push_notifications/{sessionId}_{contactId}``
    where the dispatch worker picks them up and flips ``sent``.
    """

    __slots__ = ("_documents",)

    def __init__(self, documents: DocumentStore) -> None:
        self._documents = documents

    async def register_responder(self, contact_id: str, push_token: str, *, user_id: str) -> None:
        await self._documents.put(
            RESPONDERS_COLLECTION,
            contact_id,
            {
                "userId": user_id,
                "contactId": contact_id,
                "pushToken": push_token,
                "addedAt": datetime.now(UTC).isoformat(),
            },
            merge=True,
        )
        logger.info("dispatch.responder_registered", contact_id=contact_id, user_id=user_id)

    async def lookup_delivery_token(self, contact_id: str) -> str | None:
        doc = await self._documents.get(RESPONDERS_COLLECTION, contact_id)
        if doc is None:
            return None
        return doc.get("pushToken") or None

    async def enqueue(
        self, token: str, title: str, body: str, payload: dict[str, Any], *, key: str
    ) -> bool:
        """Persist one outbound push; returns False if *key* was already queued."""
        return await self._documents.create_if_absent(
            PUSH_COLLECTION,
            key,
            {
                "to": token,
                "title": title,
                "body": body,
                "data": payload,
                "sendAt": datetime.now(UTC).isoformat(),
                "sent": False,
            },
        )

    async def get_record(self, session_id: str, contact_id: str) -> DeliveryRecord | None:
        doc = await self._documents.get(PUSH_COLLECTION, delivery_key(session_id, contact_id))
        if doc is None:
            return None
        return DeliveryRecord(
            session_id=session_id,
            contact_id=contact_id,
            target_token=doc["to"],
            title=doc["title"],
            body=doc["body"],
            payload=doc.get("data", {}),
            send_at=doc.get("sendAt") or datetime.now(UTC),
            sent=doc.get("sent", False),
        )


class UnavailableSmsComposer:
    """Composer for contexts with no SMS capability (e.g. the HTTP service).

    Callers get ``unavailable`` and fall back to a share sheet carrying
    the composed text.
    """

    async def is_available(self) -> bool:
        return False

    async def compose(self, recipients: Sequence[str], body: str) -> Literal["sent", "cancelled"]:
        raise RuntimeError("SMS is not available in this context")


# ---------------------------------------------------------------------------
# SMS body
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _SmsField:
    flag: str  # SOSSettings attribute
    attribute: str  # SharedProfile attribute
    render: Callable[[Any], str]


def _joined(label: str) -> Callable[[Any], str]:
    return lambda values: f"{label}: {', '.join(values)}"


# Output order of the optional block.
SMS_FIELDS: Final[tuple[_SmsField, ...]] = (
    _SmsField("share_blood_type", "blood_type", lambda v: f"Blood Type: {v}"),
    _SmsField("share_allergies", "allergies", _joined("Allergies")),
    _SmsField("share_medical_conditions", "medical_conditions", _joined("Medical Conditions")),
    _SmsField("share_medications", "medications", _joined("Medications")),
    _SmsField("share_notes", "notes", lambda v: f"Notes: {v}"),
    _SmsField("share_age", "age", lambda v: f"Age: {v}"),
)


def compose_sms(tracking_link: str, shared_profile: SharedProfile, settings: SOSSettings) -> str:
    """Build the SOS text: preamble and link, then one line per shared field."""
    lines = [
        field.render(value)
        for field in SMS_FIELDS
        if getattr(settings, field.flag) and (value := getattr(shared_profile, field.attribute)) not in (None, "", [])
    ]
    message = SMS_PREAMBLE.format(name=shared_profile.name, link=tracking_link)
    if lines:
        message += "\n\n" + "\n".join(lines)
    return message


def manual_share_message(tracking_link: str) -> str:
    return MANUAL_SHARE_TEXT.format(link=tracking_link)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class DispatchReport(BaseModel):
    """Per-contact result of a push fan-out."""

    session_id: str
    queued: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # no delivery token
    failed: list[str] = Field(default_factory=list)


class NotificationDispatcher:
    """Fans an SOS out to emergency contacts.

    Parameters
    ----------
    channel:
        Push dispatch channel (token directory + outbound queue).
    sms:
        The device's SMS composer.
    """

    __slots__ = ("_channel", "_sms")

    def __init__(self, channel: DispatchChannel, sms: SmsComposer) -> None:
        self._channel = channel
        self._sms = sms

    async def notify_all(
        self,
        session_id: str,
        shared_profile: SharedProfile,
        contacts: Sequence[EmergencyContact],
    ) -> DispatchReport:
        """Queue one push per reachable contact.

        Contacts without a registered token are skipped silently; SMS
        still reaches them.  A failure for one contact never stops the
        others.
        """
        report = DispatchReport(session_id=session_id)
        title = PUSH_TITLE.format(name=shared_profile.name)

        for contact in contacts:
            contact_id = contact.directory_key
            try:
                token = await self._channel.lookup_delivery_token(contact_id)
                if token is None:
                    logger.info("dispatcher.contact_skipped", session_id=session_id, contact_id=contact_id)
                    report.skipped.append(contact_id)
                    continue

                payload = {
                    "url": f"/session/{session_id}",
                    "sosSessionId": session_id,
                    "type": "sos_alert",
                    "timestamp": datetime.now(UTC).isoformat(),
                    "senderName": shared_profile.name,
                }
                created = await self._channel.enqueue(
                    token, title, PUSH_BODY, payload, key=delivery_key(session_id, contact_id)
                )
            except SOSError as exc:
                logger.warning(
                    "dispatcher.contact_failed",
                    session_id=session_id,
                    contact_id=contact_id,
                    error=exc.code,
                )
                report.failed.append(contact_id)
                continue

            (report.queued if created else report.duplicates).append(contact_id)

        logger.info(
            "dispatcher.notify_all_done",
            session_id=session_id,
            queued=len(report.queued),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def send_sms(
        self,
        contacts: Sequence[EmergencyContact],
        tracking_link: str,
        shared_profile: SharedProfile,
        settings: SOSSettings,
    ) -> SmsOutcome:
        """Open the composer with the SOS text; report the ternary outcome."""
        message = compose_sms(tracking_link, shared_profile, settings)
        recipients = [contact.phone_number for contact in contacts]

        if not await self._sms.is_available():
            logger.warning("dispatcher.sms_unavailable", recipients=len(recipients))
            return SmsOutcome(status=SmsStatus.UNAVAILABLE, fallback=FallbackAction.SHARE_SHEET, message=message)

        try:
            result = await self._sms.compose(recipients, message)
        except Exception:
            logger.error("dispatcher.sms_compose_failed", exc_info=True)
            return SmsOutcome(status=SmsStatus.UNAVAILABLE, fallback=FallbackAction.SHARE_SHEET, message=message)

        if result == "cancelled":
            logger.info("dispatcher.sms_cancelled", recipients=len(recipients))
            return SmsOutcome(
                status=SmsStatus.CANCELLED,
                fallback=FallbackAction.MANUAL_SHARE,
                message=manual_share_message(tracking_link),
            )

        logger.info("dispatcher.sms_sent", recipients=len(recipients))
        return SmsOutcome(status=SmsStatus.SENT, message=message)
