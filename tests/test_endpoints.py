"""
Tests for the HTTP endpoints — organized by router.
The queue and oracle singletons are monkeypatched; nothing leaves the process.
"""

import base64

import pytest

from conftest import FakeOracle
from medora import settings
from medora.triage import setup
from medora.triage.events import MessageType
from medora.triage.oracle import NullOracle


class RecordingQueue:
    def __init__(self):
        self.messages = []

    async def enqueue(self, message):
        self.messages.append(message)


# ────────────────────────────── Health ──────────────────────────────


class TestHealth:
    """GET /, GET /health, GET /status"""

    def test_root(self, test_client):
        resp = test_client.get("/")
        assert resp.status_code == 200
        assert "endpoints" in resp.json()

    def test_health(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["service"] == "medora-triage"

    def test_status_before_init(self, test_client, monkeypatch):
        monkeypatch.setattr(setup, "_orchestrator", None)
        assert test_client.get("/status").json() == {"status": "not_initialized"}


# ────────────────────────────── WhatsApp ────────────────────────────


class TestWhatsAppVerify:
    """GET /webhook/whatsapp"""

    def test_handshake_echoes_challenge(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "s3cret")
        resp = test_client.get("/webhook/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "s3cret", "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token_forbidden(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "s3cret")
        resp = test_client.get("/webhook/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1",
        })
        assert resp.status_code == 403

    def test_unset_token_forbidden(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "")
        resp = test_client.get("/webhook/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "1",
        })
        assert resp.status_code == 403

    def test_ping(self, test_client):
        data = test_client.get("/webhook/whatsapp/ping").json()
        assert data["ok"] is True
        assert isinstance(data["at"], int)


class TestWhatsAppWebhook:
    """POST /webhook/whatsapp"""

    BODY = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"messages": [
            {"from": "447700900123", "id": "wamid.1", "type": "text", "text": {"body": "I have a headache"}},
        ]}}]}],
    }

    def test_message_enqueued(self, test_client, monkeypatch):
        queue = RecordingQueue()
        monkeypatch.setattr(setup, "_queue_manager", queue)
        resp = test_client.post("/webhook/whatsapp", json=self.BODY)
        assert resp.status_code == 200
        [message] = queue.messages
        assert message.type == MessageType.TEXT
        assert message.text == "I have a headache"

    def test_invalid_json_still_acknowledged(self, test_client, monkeypatch):
        queue = RecordingQueue()
        monkeypatch.setattr(setup, "_queue_manager", queue)
        resp = test_client.post(
            "/webhook/whatsapp", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert queue.messages == []

    def test_not_initialized_still_acknowledged(self, test_client, monkeypatch):
        monkeypatch.setattr(setup, "_queue_manager", None)
        assert test_client.post("/webhook/whatsapp", json=self.BODY).status_code == 200


# ────────────────────────────── OCR ─────────────────────────────────


class TestOcr:
    """POST /ocr"""

    PDF = base64.b64encode(b"%PDF-1.4 lab report").decode()

    def test_unavailable_without_oracle(self, test_client, monkeypatch):
        monkeypatch.setattr(setup, "_oracle", NullOracle())
        resp = test_client.post("/ocr", json={"filename": "r.pdf", "content_base64": self.PDF})
        assert resp.status_code == 503

    def test_analysis_returned(self, test_client, monkeypatch):
        oracle = FakeOracle(document_analyze={"haemoglobin": "13.1 g/dL"})
        monkeypatch.setattr(setup, "_oracle", oracle)
        resp = test_client.post("/ocr", json={
            "filename": "report.pdf", "content_base64": f"data:application/pdf;base64,{self.PDF}",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True
        assert data["mime_type"] == "application/pdf"
        assert data["result"] == {"haemoglobin": "13.1 g/dL"}
        assert oracle.last_args["document_analyze"] == (self.PDF, "application/pdf")

    def test_bad_base64(self, test_client, monkeypatch):
        monkeypatch.setattr(setup, "_oracle", FakeOracle(document_analyze={"x": 1}))
        resp = test_client.post("/ocr", json={"filename": "r.png", "content_base64": "@@not-base64@@"})
        assert resp.status_code == 400

    def test_processing_failed(self, test_client, monkeypatch):
        monkeypatch.setattr(setup, "_oracle", FakeOracle(document_analyze=RuntimeError("quota")))
        resp = test_client.post("/ocr", json={"filename": "scan.png", "content_base64": self.PDF})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "processing_failed"

    @pytest.mark.parametrize("missing", ["filename", "content_base64"])
    def test_missing_field_rejected(self, test_client, missing):
        body = {"filename": "r.pdf", "content_base64": self.PDF}
        del body[missing]
        assert test_client.post("/ocr", json=body).status_code == 422
