"""
Tests for WhatsApp webhook parsing.

Covers text, legacy buttons, interactive replies (button, list, flow),
media, unsupported types, status-only deliveries and malformed bodies.
"""

import pytest

from medora.triage.events import MessageType
from medora.triage.ingest.whatsapp_ingest import WhatsAppIngest, extract_incoming_text


def _webhook(*messages, statuses=None) -> dict:
    value = {"messaging_product": "whatsapp"}
    if messages:
        value["messages"] = list(messages)
    if statuses:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": "messages", "value": value}]}],
    }


def _message(msg_type: str, payload: dict | None = None, msg_id: str = "wamid.1") -> dict:
    message = {"from": "447700900123", "id": msg_id, "timestamp": "1718000000", "type": msg_type}
    if payload is not None:
        message[msg_type] = payload
    return message


@pytest.fixture
def ingest():
    return WhatsAppIngest()


class TestWhatsAppIngest:

    def test_text_message(self, ingest):
        [msg] = ingest.parse(_webhook(_message("text", {"body": "I have a headache"})))
        assert msg.type == MessageType.TEXT
        assert msg.text == "I have a headache"
        assert msg.user_id == "447700900123"
        assert msg.message_id == "wamid.1"

    def test_legacy_button_is_text(self, ingest):
        [msg] = ingest.parse(_webhook(_message("button", {"text": "Yes", "payload": "yes"})))
        assert msg.type == MessageType.TEXT
        assert msg.text == "Yes"

    def test_button_reply_carries_option_id(self, ingest):
        raw = _message("interactive", {
            "type": "button_reply",
            "button_reply": {"id": "confirm_yes", "title": "Yes, book it"},
        })
        [msg] = ingest.parse(_webhook(raw))
        assert msg.type == MessageType.INTERACTIVE
        assert msg.option_id == "confirm_yes"
        assert msg.text == "Yes, book it"

    def test_list_reply(self, ingest):
        raw = _message("interactive", {
            "type": "list_reply",
            "list_reply": {"id": "book_tele", "title": "Teleconsultation"},
        })
        [msg] = ingest.parse(_webhook(raw))
        assert msg.option_id == "book_tele"
        assert msg.text == "Teleconsultation"

    def test_flow_reply_is_text(self, ingest):
        raw = _message("interactive", {
            "type": "nfm_reply",
            "nfm_reply": {"response_json": '{"city": "Hubli"}'},
        })
        [msg] = ingest.parse(_webhook(raw))
        assert msg.type == MessageType.TEXT
        assert msg.text == '{"city": "Hubli"}'

    def test_image_is_media(self, ingest):
        raw = _message("image", {"id": "MEDIA-9", "mime_type": "image/jpeg", "caption": "my rash"})
        [msg] = ingest.parse(_webhook(raw))
        assert msg.type == MessageType.MEDIA
        assert msg.media_id == "MEDIA-9"
        assert msg.mime_type == "image/jpeg"
        assert msg.text == "my rash"

    def test_location_is_unsupported(self, ingest):
        raw = _message("location", {"latitude": 15.36, "longitude": 75.12})
        [msg] = ingest.parse(_webhook(raw))
        assert msg.type == MessageType.UNSUPPORTED
        assert msg.raw_type == "location"

    def test_batched_messages_keep_order(self, ingest):
        body = _webhook(
            _message("text", {"body": "first"}, msg_id="wamid.1"),
            _message("text", {"body": "second"}, msg_id="wamid.2"),
        )
        assert [m.text for m in ingest.parse(body)] == ["first", "second"]

    def test_statuses_only(self, ingest):
        body = _webhook(statuses=[{"id": "wamid.out", "status": "delivered"}])
        assert ingest.parse(body) == []

    def test_message_without_sender_skipped(self, ingest):
        raw = _message("text", {"body": "hello"})
        del raw["from"]
        assert ingest.parse(_webhook(raw)) == []

    @pytest.mark.parametrize("body", [None, [], "not json", {"entry": None}, {"entry": [{}]}])
    def test_malformed_bodies(self, ingest, body):
        assert ingest.parse(body) == []


def test_extract_incoming_text_unknown_type():
    assert extract_incoming_text({"type": "sticker", "sticker": {"id": "S1"}}) == ""
