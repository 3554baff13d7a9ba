"""
End-to-end tests through the HTTP API.

Tests cover:
- Auth routes and the bearer gate
- WhatsApp webhook ingestion, handshake and signature check
- Tenant isolation of the business routes
- Outbound messages with and without WhatsApp credentials
- Health and metrics endpoints
- Request log records for webhook deliveries
"""

import hashlib
import hmac
import json
import logging

import pytest

from crm.config import get_settings


def register(client, username="ana", email="ana@example.com", password="secret1"):
    response = client.post(
        "/api/auth/register",
        json={"name": "Ana Silva", "username": username, "email": email, "password": password},
    )
    assert response.status_code == 201
    return response.json()


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tenant(client):
    """Registered user with WhatsApp credentials for phone number PNID-A."""
    body = register(client)
    headers = auth_headers(body["token"])
    response = client.put(
        "/api/whatsapp/settings",
        json={"phoneNumberId": "PNID-A", "accessToken": "token-a", "webhookVerifyToken": "tenant-verify"},
        headers=headers,
    )
    assert response.status_code == 200
    return {"id": body["user"]["id"], "headers": headers}


class TestAuthRoutes:
    """Test the /api/auth endpoints."""

    def test_register_and_me(self, client):
        body = register(client)

        assert body["user"]["email"] == "ana@example.com"
        assert "passwordHash" not in body["user"]
        assert "createdAt" in body["user"]

        response = client.get("/api/auth/me", headers=auth_headers(body["token"]))
        assert response.status_code == 200
        assert response.json()["id"] == body["user"]["id"]

    def test_duplicate_email_returns_409(self, client):
        register(client)

        response = client.post(
            "/api/auth/register",
            json={"name": "Other", "username": "other", "email": "ana@example.com", "password": "secret1"},
        )

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "conflict"

    def test_login_and_logout(self, client):
        register(client)

        response = client.post("/api/auth/login", json={"email": "ana@example.com", "password": "secret1"})
        assert response.status_code == 200
        token = response.json()["token"]

        assert client.post("/api/auth/logout", headers=auth_headers(token)).json() == {"success": True}
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401
        # Logging out again is harmless
        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 200

    def test_bad_credentials_return_401(self, client):
        register(client)

        response = client.post("/api/auth/login", json={"email": "ana@example.com", "password": "wrong12"})

        assert response.status_code == 401
        assert response.json()["detail"]["message"] == "Invalid email or password"

    def test_invalid_email_is_rejected(self, client):
        response = client.post(
            "/api/auth/register",
            json={"name": "Ana", "username": "ana", "email": "not-an-email", "password": "secret1"},
        )

        assert response.status_code == 422

    def test_password_reset_flow(self, client):
        body = register(client)

        response = client.post("/api/auth/forgot-password", json={"email": "ana@example.com"})
        assert response.status_code == 200
        reset_token = response.json()["resetToken"]

        response = client.post("/api/auth/reset-password", json={"token": reset_token, "password": "newpass1"})
        assert response.status_code == 200

        assert client.get("/api/auth/me", headers=auth_headers(body["token"])).status_code == 401
        login = client.post("/api/auth/login", json={"email": "ana@example.com", "password": "newpass1"})
        assert login.status_code == 200

    def test_forgot_password_unknown_email_returns_404(self, client):
        response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

        assert response.status_code == 404

    def test_invalid_reset_token_returns_400(self, client):
        response = client.post("/api/auth/reset-password", json={"token": "bogus", "password": "newpass1"})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "invalid_token"

    def test_reset_token_is_withheld_unless_enabled(self, client, monkeypatch):
        register(client)
        monkeypatch.setattr(get_settings(), "RETURN_RESET_TOKEN", False)

        response = client.post("/api/auth/forgot-password", json={"email": "ana@example.com"})

        assert response.status_code == 200
        assert response.json()["resetToken"] is None


class TestAuthGate:
    """Test that business routes require a valid session."""

    @pytest.mark.parametrize(
        "path",
        ["/api/contacts", "/api/agents", "/api/conversations", "/api/whatsapp/settings", "/api/auth/me"],
    )
    def test_missing_token_returns_401(self, client, path):
        response = client.get(path)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_token_returns_401(self, client):
        response = client.get("/api/contacts", headers=auth_headers("not-a-session"))

        assert response.status_code == 401


class TestWebhookIngestion:
    """Test POST /api/whatsapp/webhook."""

    def test_first_message_creates_contact_conversation_and_message(
        self, client, tenant, gateway, make_payload, make_text_message
    ):
        response = client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

        [contact] = client.get("/api/contacts", headers=tenant["headers"]).json()
        assert contact["phone"] == "+5511999990000"
        assert contact["stage"] == "new"
        assert contact["source"] == "whatsapp"
        assert contact["name"] == "WhatsApp User 0000"

        [conversation] = client.get("/api/conversations", headers=tenant["headers"]).json()
        assert conversation["status"] == "active"
        assert conversation["contactId"] == contact["id"]
        assert conversation["contact"]["id"] == contact["id"]
        assert conversation["messageCount"] == 1
        assert conversation["lastMessage"]["content"] == "Hello"
        assert conversation["lastMessage"]["isIncoming"] is True

        assert [message_id for _, message_id in gateway.read] == ["wamid.1"]

    def test_redelivery_is_stored_once(self, client, tenant, make_payload, make_text_message):
        payload = make_payload([make_text_message("wamid.1")])

        assert client.post("/api/whatsapp/webhook", json=payload).status_code == 200
        assert client.post("/api/whatsapp/webhook", json=payload).status_code == 200

        [conversation] = client.get("/api/conversations", headers=tenant["headers"]).json()
        assert conversation["messageCount"] == 1

    def test_follow_up_reuses_conversation(self, client, tenant, make_payload, make_text_message):
        client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))
        client.post(
            "/api/whatsapp/webhook",
            json=make_payload(
                [make_text_message("wamid.2", body="Any news?")],
                contacts=[{"wa_id": "5511999990000", "profile": {"name": "Maria"}}],
            ),
        )

        [conversation] = client.get("/api/conversations", headers=tenant["headers"]).json()
        messages = client.get(
            f"/api/conversations/{conversation['id']}/messages", headers=tenant["headers"]
        ).json()
        assert [m["content"] for m in messages] == ["Hello", "Any news?"]
        assert conversation["lastMessageAt"] == messages[-1]["timestamp"]
        assert conversation["contact"]["name"] == "Maria"

    def test_unknown_phone_number_id_still_returns_200(self, client, tenant, make_payload, make_text_message):
        payload = make_payload([make_text_message("wamid.1")], phone_number_id="PNID-OTHER")

        response = client.post("/api/whatsapp/webhook", json=payload)

        assert response.status_code == 200
        assert client.get("/api/contacts", headers=tenant["headers"]).json() == []

    def test_unexpected_shape_returns_200(self, client):
        response = client.post("/api/whatsapp/webhook", json={"hello": "world"})

        assert response.status_code == 200

    def test_invalid_json_returns_400(self, client):
        response = client.post(
            "/api/whatsapp/webhook",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestWebhookSignature:
    """Test X-Hub-Signature-256 checking when an app secret is configured."""

    @pytest.fixture(autouse=True)
    def app_secret(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "WHATSAPP_APP_SECRET", "app-secret")

    def sign(self, body: str) -> str:
        digest = hmac.new(b"app-secret", body.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def test_valid_signature_is_accepted(self, client, tenant, make_payload, make_text_message):
        body = json.dumps(make_payload([make_text_message("wamid.1")]))

        response = client.post(
            "/api/whatsapp/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": self.sign(body)},
        )

        assert response.status_code == 200
        assert len(client.get("/api/contacts", headers=tenant["headers"]).json()) == 1

    def test_missing_signature_returns_401(self, client, tenant, make_payload, make_text_message):
        response = client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))

        assert response.status_code == 401
        assert client.get("/api/contacts", headers=tenant["headers"]).json() == []

    def test_wrong_signature_returns_401(self, client):
        body = '{"object":"whatsapp_business_account","entry":[]}'

        response = client.post(
            "/api/whatsapp/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
        )

        assert response.status_code == 401


class TestWebhookHandshake:
    """Test GET /api/whatsapp/webhook."""

    def test_global_verify_token(self, client):
        response = client.get(
            "/api/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "global-verify-token", "hub.challenge": "4242"},
        )

        assert response.status_code == 200
        assert response.text == "4242"

    def test_tenant_verify_token(self, client, tenant):
        response = client.get(
            "/api/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "tenant-verify", "hub.challenge": "99"},
        )

        assert response.status_code == 200
        assert response.text == "99"

    def test_wrong_token_returns_403(self, client):
        response = client.get(
            "/api/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "4242"},
        )

        assert response.status_code == 403


class TestWhatsappSettings:
    """Test GET/PUT /api/whatsapp/settings."""

    def test_access_token_is_never_echoed(self, client, tenant):
        body = client.get("/api/whatsapp/settings", headers=tenant["headers"]).json()

        assert body["phoneNumberId"] == "PNID-A"
        assert body["hasAccessToken"] is True
        assert "accessToken" not in body

    def test_unconfigured_tenant_gets_defaults(self, client):
        token = register(client, username="bob", email="bob@example.com")["token"]

        body = client.get("/api/whatsapp/settings", headers=auth_headers(token)).json()

        assert body["hasAccessToken"] is False
        assert body["phoneNumberId"] is None

    def test_partial_update_keeps_other_fields(self, client, tenant):
        response = client.put("/api/whatsapp/settings", json={"isActive": True}, headers=tenant["headers"])

        body = response.json()
        assert body["isActive"] is True
        assert body["phoneNumberId"] == "PNID-A"
        assert body["hasAccessToken"] is True

    def test_phone_number_id_of_another_tenant_returns_409(self, client, tenant, make_payload, make_text_message):
        other = auth_headers(register(client, username="bob", email="bob@example.com")["token"])

        response = client.put("/api/whatsapp/settings", json={"phoneNumberId": "PNID-A"}, headers=other)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "conflict"
        assert client.get("/api/whatsapp/settings", headers=other).json()["phoneNumberId"] is None

        client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))

        assert len(client.get("/api/conversations", headers=tenant["headers"]).json()) == 1
        assert client.get("/api/conversations", headers=other).json() == []

    def test_blank_phone_number_id_is_stored_as_unset(self, client, tenant):
        other = auth_headers(register(client, username="bob", email="bob@example.com")["token"])
        client.put("/api/whatsapp/settings", json={"phoneNumberId": " "}, headers=tenant["headers"])

        response = client.put("/api/whatsapp/settings", json={"phoneNumberId": ""}, headers=other)

        assert response.status_code == 200
        assert response.json()["phoneNumberId"] is None


class TestOutboundMessages:
    """Test POST /api/conversations/{id}/messages."""

    @pytest.fixture
    def conversation_id(self, client, tenant, make_payload, make_text_message):
        client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))
        [conversation] = client.get("/api/conversations", headers=tenant["headers"]).json()
        return conversation["id"]

    def test_message_is_relayed_with_credentials(self, client, tenant, gateway, conversation_id):
        response = client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"content": "Hi Maria"},
            headers=tenant["headers"],
        )

        assert response.status_code == 201
        body = response.json()
        assert body["delivered"] is True
        assert body["isIncoming"] is False
        [(credentials, to, text)] = gateway.sent
        assert (credentials.access_token, to, text) == ("token-a", "+5511999990000", "Hi Maria")

    def test_without_access_token_message_is_only_stored(self, client, tenant, gateway, conversation_id):
        client.put("/api/whatsapp/settings", json={"accessToken": None}, headers=tenant["headers"])

        response = client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"content": "Hi Maria"},
            headers=tenant["headers"],
        )

        assert response.status_code == 201
        assert response.json()["delivered"] is False
        assert gateway.sent == []
        messages = client.get(f"/api/conversations/{conversation_id}/messages", headers=tenant["headers"]).json()
        assert [m["content"] for m in messages] == ["Hello", "Hi Maria"]

    def test_gateway_failure_still_returns_201(self, client, tenant, gateway, conversation_id):
        gateway.succeed = False

        response = client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"content": "Hi Maria"},
            headers=tenant["headers"],
        )

        assert response.status_code == 201
        assert response.json()["delivered"] is False

    def test_empty_content_is_rejected(self, client, tenant, conversation_id):
        response = client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"content": ""},
            headers=tenant["headers"],
        )

        assert response.status_code == 422


class TestTenantIsolation:
    """Test that one tenant never sees another tenant's records."""

    def test_other_tenant_gets_404(self, client, tenant):
        contact = client.post(
            "/api/contacts", json={"name": "Lead", "phone": "+55 11 98888-7777"}, headers=tenant["headers"]
        ).json()
        assert contact["phone"] == "+5511988887777"

        other = auth_headers(register(client, username="bob", email="bob@example.com")["token"])

        assert client.get(f"/api/contacts/{contact['id']}", headers=other).status_code == 404
        assert client.put(f"/api/contacts/{contact['id']}", json={"name": "x"}, headers=other).status_code == 404
        assert client.delete(f"/api/contacts/{contact['id']}", headers=other).status_code == 404
        assert client.get("/api/contacts", headers=other).json() == []
        assert client.get(f"/api/contacts/{contact['id']}", headers=tenant["headers"]).status_code == 200


class TestCrudRoutes:
    """Test contacts, agents and conversations CRUD."""

    def test_contact_lifecycle(self, client, tenant):
        created = client.post(
            "/api/contacts", json={"name": "Lead", "company": "ACME", "value": 500}, headers=tenant["headers"]
        )
        assert created.status_code == 201
        contact_id = created.json()["id"]

        updated = client.put(
            f"/api/contacts/{contact_id}", json={"stage": "qualified", "name": None}, headers=tenant["headers"]
        ).json()
        assert updated["stage"] == "qualified"
        assert updated["name"] == "Lead"

        assert client.delete(f"/api/contacts/{contact_id}", headers=tenant["headers"]).status_code == 204
        assert client.get(f"/api/contacts/{contact_id}", headers=tenant["headers"]).status_code == 404

    def test_agent_lifecycle(self, client, tenant):
        created = client.post("/api/agents", json={"name": "SDR Bot", "type": "sdr"}, headers=tenant["headers"])
        assert created.status_code == 201
        agent = created.json()
        assert agent["status"] == "active"
        assert agent["tools"] == []

        updated = client.put(f"/api/agents/{agent['id']}", json={"status": "training"}, headers=tenant["headers"])
        assert updated.json()["status"] == "training"

        assert client.delete(f"/api/agents/{agent['id']}", headers=tenant["headers"]).status_code == 204

    def test_webhook_conversation_is_assigned_to_sdr(self, client, tenant, make_payload, make_text_message):
        agent = client.post("/api/agents", json={"name": "SDR Bot", "type": "sdr"}, headers=tenant["headers"]).json()

        client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))

        [conversation] = client.get("/api/conversations", headers=tenant["headers"]).json()
        assert conversation["assignedAgentId"] == agent["id"]
        assert conversation["agent"]["name"] == "SDR Bot"

    def test_second_active_conversation_conflicts(self, client, tenant):
        contact = client.post("/api/contacts", json={"name": "Lead"}, headers=tenant["headers"]).json()

        first = client.post("/api/conversations", json={"contactId": contact["id"]}, headers=tenant["headers"])
        second = client.post("/api/conversations", json={"contactId": contact["id"]}, headers=tenant["headers"])

        assert first.status_code == 201
        assert second.status_code == 409

    def test_conversation_for_unknown_contact_returns_404(self, client, tenant):
        response = client.post("/api/conversations", json={"contactId": "missing"}, headers=tenant["headers"])

        assert response.status_code == 404

    def test_conversation_status_update(self, client, tenant):
        contact = client.post("/api/contacts", json={"name": "Lead"}, headers=tenant["headers"]).json()
        conversation = client.post(
            "/api/conversations", json={"contactId": contact["id"]}, headers=tenant["headers"]
        ).json()

        response = client.put(
            f"/api/conversations/{conversation['id']}", json={"status": "resolved"}, headers=tenant["headers"]
        )

        assert response.status_code == 200
        assert response.json()["status"] == "resolved"


class TestHealthAndMetrics:
    """Test operational endpoints."""

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_exposes_webhook_counters(self, client, make_payload, make_text_message):
        client.post("/api/whatsapp/webhook", json=make_payload([make_text_message("wamid.1")]))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert "http_requests_total" in response.text


class TestRequestLogging:
    """Test the request log line written for webhook deliveries at INFO."""

    @pytest.fixture(autouse=True)
    def info_logs(self, caplog):
        caplog.set_level(logging.INFO)

    @staticmethod
    def webhook_record(caplog):
        [record] = [
            r for r in caplog.records
            if r.name == "crm.requests" and r.path == "/api/whatsapp/webhook"
        ]
        return record

    def test_processed_delivery_is_logged_with_event_counts(
        self, client, tenant, caplog, make_payload, make_text_message
    ):
        payload = make_payload([make_text_message("wamid.1"), make_text_message("wamid.1")])

        response = client.post("/api/whatsapp/webhook", json=payload)

        assert response.status_code == 200
        record = self.webhook_record(caplog)
        assert record.levelno == logging.INFO
        assert record.result == "processed"
        assert record.events == 2
        assert record.events_created == 1
        assert record.events_duplicate == 1
        assert record.events_skipped == 0

    def test_unroutable_delivery_counts_skipped_events(self, client, caplog, make_payload, make_text_message):
        payload = make_payload([make_text_message("wamid.1")], phone_number_id="PNID-UNKNOWN")

        response = client.post("/api/whatsapp/webhook", json=payload)

        assert response.status_code == 200
        record = self.webhook_record(caplog)
        assert record.events_created == 0
        assert record.events_skipped == 1

    def test_rejected_delivery_is_logged_as_warning(self, client, caplog):
        response = client.post(
            "/api/whatsapp/webhook",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        record = self.webhook_record(caplog)
        assert record.levelno == logging.WARNING
        assert record.result == "invalid_json"
        assert record.events == 0
