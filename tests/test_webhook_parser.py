"""
Tests for webhook normalization and the subscription handshake.
"""

from datetime import datetime

import pytest

from crm.webhook import parse_webhook, verify_webhook


class TestParseWebhook:
    """Test flattening of Cloud API deliveries into events."""

    def test_single_text_message(self, make_payload, make_text_message):
        payload = make_payload(
            [make_text_message("wamid.1")],
            contacts=[{"wa_id": "5511999990000", "profile": {"name": "Maria"}}],
        )

        [event] = parse_webhook(payload)

        assert event.from_address == "+5511999990000"
        assert event.external_message_id == "wamid.1"
        assert event.body == "Hello"
        assert event.phone_number_id == "PNID-A"
        assert event.display_name == "Maria"
        assert event.timestamp == datetime(2025, 1, 15, 10, 0, 0)
        assert event.tenant_id is None

    def test_events_keep_payload_order_across_entries(self, make_payload, make_text_message):
        payload = make_payload([make_text_message("wamid.1"), make_text_message("wamid.2")])
        second = make_payload([make_text_message("wamid.3")], phone_number_id="PNID-B")
        payload["entry"].extend(second["entry"])

        events = parse_webhook(payload)

        assert [e.external_message_id for e in events] == ["wamid.1", "wamid.2", "wamid.3"]
        assert [e.phone_number_id for e in events] == ["PNID-A", "PNID-A", "PNID-B"]

    def test_non_text_messages_are_skipped(self, make_payload, make_text_message):
        image = {"from": "5511999990000", "id": "wamid.img", "type": "image", "image": {"id": "media-1"}}
        payload = make_payload([image, make_text_message("wamid.2")])

        events = parse_webhook(payload)

        assert [e.external_message_id for e in events] == ["wamid.2"]

    def test_display_name_only_for_matching_sender(self, make_payload, make_text_message):
        payload = make_payload(
            [make_text_message("wamid.1", sender="5511000000001")],
            contacts=[{"wa_id": "5511999990000", "profile": {"name": "Maria"}}],
        )

        [event] = parse_webhook(payload)

        assert event.display_name is None

    def test_status_updates_yield_nothing(self, make_payload):
        payload = make_payload([])
        payload["entry"][0]["changes"][0]["value"]["statuses"] = [{"id": "wamid.1", "status": "delivered"}]

        assert parse_webhook(payload) == []

    def test_other_fields_are_ignored(self, make_payload, make_text_message):
        payload = make_payload([make_text_message("wamid.1")], field="account_update")

        assert parse_webhook(payload) == []

    def test_incomplete_message_is_skipped(self, make_payload, make_text_message):
        no_body = {"from": "5511999990000", "id": "wamid.1", "type": "text"}
        payload = make_payload([no_body, make_text_message("wamid.2")])

        assert [e.external_message_id for e in parse_webhook(payload)] == ["wamid.2"]

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {},
            {"object": "page", "entry": []},
            {"object": "whatsapp_business_account"},
            {"object": "whatsapp_business_account", "entry": "nope"},
            {"object": "whatsapp_business_account", "entry": [{"changes": [None]}]},
            {"object": "whatsapp_business_account", "entry": [{"changes": [{"field": "messages", "value": []}]}]},
        ],
    )
    def test_malformed_payloads_yield_no_events(self, payload):
        assert parse_webhook(payload) == []


class TestVerifyWebhook:
    """Test the Meta subscription handshake."""

    def test_matching_token_echoes_challenge(self):
        assert verify_webhook("subscribe", "secret", "12345", ["secret"]) == "12345"

    def test_any_configured_token_matches(self):
        assert verify_webhook("subscribe", "tenant", "12345", [None, "global", "tenant"]) == "12345"

    @pytest.mark.parametrize(
        "mode,token,challenge",
        [
            ("subscribe", "wrong", "12345"),
            ("unsubscribe", "secret", "12345"),
            (None, "secret", "12345"),
            ("subscribe", None, "12345"),
            ("subscribe", "secret", None),
        ],
    )
    def test_rejections(self, mode, token, challenge):
        assert verify_webhook(mode, token, challenge, ["secret"]) is None

    def test_no_configured_tokens_rejects(self):
        assert verify_webhook("subscribe", "secret", "12345", [None]) is None
