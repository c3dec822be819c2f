"""Tests for push fan-out and the SMS fallback.

Covers the SMS body format and field order, push delivery records,
contacts without a registered token, and the ternary SMS outcome.
"""

from __future__ import annotations

import asyncio

from lifeline.models.enums import FallbackAction, SmsStatus
from lifeline.models.session import SharedProfile, SOSSettings
from lifeline.models.user_profile import EmergencyContact
from lifeline.services.document_store import InMemoryDocumentStore
from lifeline.services.errors import StoreUnavailableError
from lifeline.services.notifications import (
    PUSH_COLLECTION,
    RESPONDERS_COLLECTION,
    DocumentDispatchChannel,
    NotificationDispatcher,
    UnavailableSmsComposer,
    compose_sms,
    manual_share_message,
)

LINK = "https://sos.example.test/session/s1?token=abcdEFGH1234ijkl"

FULL = SharedProfile(
    name="Maya Okafor",
    blood_type="O+",
    age=36,
    medical_conditions=["asthma", "diabetes"],
    allergies=["penicillin"],
    medications=["albuterol"],
    notes="Inhaler in left pocket",
)

CONTACTS = [
    EmergencyContact(name="Sam", phone_number="+14155550123"),
    EmergencyContact(name="Lee", phone_number="+14155550199", contact_id="lee-park"),
]


# -----------------------------------------------------------------------
# SMS body
# -----------------------------------------------------------------------


class TestComposeSms:
    def test_full_message_in_fixed_order(self) -> None:
        message = compose_sms(LINK, FULL, SOSSettings(share_notes=True))
        assert message == (
            f"EMERGENCY SOS ALERT from Maya Okafor. I need help. Track my live location: {LINK}\n"
            "\n"
            "Blood Type: O+\n"
            "Allergies: penicillin\n"
            "Medical Conditions: asthma, diabetes\n"
            "Medications: albuterol\n"
            "Notes: Inhaler in left pocket\n"
            "Age: 36"
        )

    def test_disabled_flag_drops_line_even_with_value(self) -> None:
        message = compose_sms(LINK, FULL, SOSSettings(share_blood_type=False, share_notes=False))
        assert "Blood Type" not in message
        assert "Notes" not in message
        assert "Allergies: penicillin" in message

    def test_missing_value_drops_line_even_when_enabled(self) -> None:
        message = compose_sms(LINK, SharedProfile(name="Maya Okafor", age=36), SOSSettings(share_notes=True))
        assert message.endswith(f"{LINK}\n\nAge: 36")

    def test_nothing_shared_is_preamble_only(self) -> None:
        message = compose_sms(LINK, SharedProfile(name="Maya Okafor"), SOSSettings())
        assert message == f"EMERGENCY SOS ALERT from Maya Okafor. I need help. Track my live location: {LINK}"

    def test_manual_share_text(self) -> None:
        assert manual_share_message(LINK) == f"EMERGENCY SOS ALERT. I need help. Track my live location: {LINK}"


# -----------------------------------------------------------------------
# Push fan-out
# -----------------------------------------------------------------------


class TestNotifyAll:
    async def test_record_per_contact_with_token(
        self, documents: InMemoryDocumentStore, channel: DocumentDispatchChannel, dispatcher: NotificationDispatcher
    ) -> None:
        await channel.register_responder("lee-park", "ExponentPushToken[lee]", user_id="user-1")

        report = await dispatcher.notify_all("s1", FULL, CONTACTS)

        assert report.queued == ["lee-park"]
        assert report.skipped == ["+14155550123"], "contact without a token is skipped"
        record = await channel.get_record("s1", "lee-park")
        assert record is not None
        assert record.target_token == "ExponentPushToken[lee]"
        assert record.title == "SOS EMERGENCY: Maya Okafor"
        assert record.body == "Needs your help! Tap to view their live location."
        assert record.sent is False
        assert record.payload["url"] == "/session/s1"
        assert record.payload["type"] == "sos_alert"
        assert record.payload["sosSessionId"] == "s1"
        assert record.payload["senderName"] == "Maya Okafor"
        assert await documents.get(PUSH_COLLECTION, "s1_lee-park") is not None

    async def test_no_tokens_means_no_records(
        self, documents: InMemoryDocumentStore, dispatcher: NotificationDispatcher
    ) -> None:
        report = await dispatcher.notify_all("s1", FULL, CONTACTS)
        assert report.queued == []
        assert len(report.skipped) == 2
        assert await documents.query(PUSH_COLLECTION, "sent", False) == []

    async def test_no_duplicate_record_per_session_and_contact(
        self, documents: InMemoryDocumentStore, channel: DocumentDispatchChannel, dispatcher: NotificationDispatcher
    ) -> None:
        await channel.register_responder("lee-park", "tok", user_id="user-1")

        await dispatcher.notify_all("s1", FULL, CONTACTS)
        second = await dispatcher.notify_all("s1", FULL, CONTACTS)

        assert second.queued == []
        assert second.duplicates == ["lee-park"]
        assert len(await documents.query(PUSH_COLLECTION, "to", "tok")) == 1

    async def test_concurrent_enqueue_writes_one_record(
        self, documents: InMemoryDocumentStore, channel: DocumentDispatchChannel
    ) -> None:
        results = await asyncio.gather(
            channel.enqueue("tok", "title", "body", {}, key="s1_lee-park"),
            channel.enqueue("tok", "title", "body", {}, key="s1_lee-park"),
        )

        assert sorted(results) == [False, True], "exactly one caller creates the record"
        assert len(await documents.query(PUSH_COLLECTION, "to", "tok")) == 1

    async def test_register_responder_merges(
        self, documents: InMemoryDocumentStore, channel: DocumentDispatchChannel
    ) -> None:
        await channel.register_responder("lee-park", "old", user_id="user-1")
        await channel.register_responder("lee-park", "new", user_id="user-1")
        doc = await documents.get(RESPONDERS_COLLECTION, "lee-park")
        assert doc["pushToken"] == "new"
        assert await channel.lookup_delivery_token("lee-park") == "new"

    async def test_store_failure_for_one_contact_does_not_stop_others(self, sms) -> None:
        class FlakyChannel:
            async def lookup_delivery_token(self, contact_id: str) -> str | None:
                if contact_id == "+14155550123":
                    raise StoreUnavailableError()
                return f"tok-{contact_id}"

            async def enqueue(self, token, title, body, payload, *, key) -> bool:  # noqa: ANN001
                return True

        dispatcher = NotificationDispatcher(FlakyChannel(), sms)
        report = await dispatcher.notify_all("s1", FULL, CONTACTS)

        assert report.failed == ["+14155550123"]
        assert report.queued == ["lee-park"]


# -----------------------------------------------------------------------
# SMS outcome
# -----------------------------------------------------------------------


class TestSendSms:
    async def test_sent(self, channel: DocumentDispatchChannel, sms) -> None:
        outcome = await NotificationDispatcher(channel, sms).send_sms(CONTACTS, LINK, FULL, SOSSettings())

        assert outcome.status is SmsStatus.SENT
        assert outcome.fallback is FallbackAction.NONE
        recipients, body = sms.calls[0]
        assert recipients == ["+14155550123", "+14155550199"], "one message to every contact"
        assert body.startswith("EMERGENCY SOS ALERT from Maya Okafor.")

    async def test_cancelled_offers_manual_share(self, channel: DocumentDispatchChannel, sms) -> None:
        sms.result = "cancelled"
        outcome = await NotificationDispatcher(channel, sms).send_sms(CONTACTS, LINK, FULL, SOSSettings())

        assert outcome.status is SmsStatus.CANCELLED
        assert outcome.fallback is FallbackAction.MANUAL_SHARE
        assert outcome.message == manual_share_message(LINK)

    async def test_unavailable_offers_share_sheet(self, channel: DocumentDispatchChannel, sms) -> None:
        sms.available = False
        outcome = await NotificationDispatcher(channel, sms).send_sms(CONTACTS, LINK, FULL, SOSSettings())

        assert outcome.status is SmsStatus.UNAVAILABLE
        assert outcome.fallback is FallbackAction.SHARE_SHEET
        assert LINK in outcome.message
        assert sms.calls == [], "composer is never opened when unavailable"

    async def test_server_composer_is_always_unavailable(self, channel: DocumentDispatchChannel) -> None:
        dispatcher = NotificationDispatcher(channel, UnavailableSmsComposer())
        outcome = await dispatcher.send_sms(CONTACTS, LINK, FULL, SOSSettings())
        assert outcome.status is SmsStatus.UNAVAILABLE
        assert outcome.fallback is FallbackAction.SHARE_SHEET
