"""
Inbound email webhook route tests.

Uses FastAPI TestClient against se_monitor.main.app. The ingestion pipeline
is patched where the router imports it, except in the end-to-end class,
which patches only the storage collaborators.

Coverage:
  - GET health check
  - JSON, form-urlencoded and multipart bodies reach the pipeline
  - always 200: ignored emails, unexpected exceptions
  - 401: X-Webhook-Secret and Mailgun signature verification
  - SKIP_WEBHOOK_VERIFICATION bypass
"""

import hashlib
import hmac
import os
import pytest
from unittest.mock import patch

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service-key.sig")

from fastapi.testclient import TestClient

from se_monitor.models.ingest import IngestResponse, IngestStatus
from se_monitor.models.listing import SaveResult

_URL = "/api/webhooks/inbound-email"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("INBOUND_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("MAILGUN_SIGNING_KEY", raising=False)
    monkeypatch.delenv("SKIP_WEBHOOK_VERIFICATION", raising=False)
    from se_monitor.main import app
    return TestClient(app)


@pytest.fixture
def mock_ingest():
    with patch("se_monitor.routers.inbound_email.ingest_email") as mock:
        mock.return_value = IngestResponse(
            status=IngestStatus.PROCESSED,
            success=True,
            email_id="email-1",
            created=1,
            skipped=0,
            total=1,
        )
        yield mock


def _mailgun_fields(**overrides) -> dict:
    fields = {
        "recipient": "user-1+se@listings.example.com",
        "sender": "alerts@streeteasy.com",
        "subject": "New Rental Listings",
        "body-html": "<p>https://streeteasy.com/rental/1</p>",
    }
    fields.update(overrides)
    return fields


def _sign(key: str, timestamp: str, token: str) -> str:
    return hmac.new(key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256).hexdigest()


class TestHealth:
    def test_get_webhook(self, client):
        response = client.get(_URL)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["endpoint"] == "inbound-email"

    def test_app_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_describe_checks_none_configured(self, client):
        from se_monitor.main import describe_webhook_checks
        assert describe_webhook_checks() == []

    def test_describe_checks_both(self, client, monkeypatch):
        from se_monitor.main import describe_webhook_checks
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("MAILGUN_SIGNING_KEY", "key-123")
        assert describe_webhook_checks() == ["X-Webhook-Secret", "Mailgun signature"]

    def test_describe_checks_skipped(self, client, monkeypatch):
        from se_monitor.main import describe_webhook_checks
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("SKIP_WEBHOOK_VERIFICATION", "true")
        assert describe_webhook_checks() == []


class TestRequestDecoding:
    def test_json_body(self, client, mock_ingest):
        payload = {"To": "user-1+se@listings.example.com", "HtmlBody": "<p>hi</p>"}
        response = client.post(_URL, json=payload)

        assert response.status_code == 200
        assert response.json()["created"] == 1
        assert mock_ingest.call_args[0][0] == payload

    def test_form_body(self, client, mock_ingest):
        response = client.post(_URL, data=_mailgun_fields())

        assert response.status_code == 200
        assert mock_ingest.call_args[0][0]["recipient"] == "user-1+se@listings.example.com"
        assert mock_ingest.call_args[0][0]["body-html"] == "<p>https://streeteasy.com/rental/1</p>"

    def test_multipart_body_drops_attachments(self, client, mock_ingest):
        response = client.post(
            _URL,
            data=_mailgun_fields(),
            files={"attachment-1": ("photo.jpg", b"\xff\xd8\xff", "image/jpeg")},
        )

        assert response.status_code == 200
        payload = mock_ingest.call_args[0][0]
        assert payload["sender"] == "alerts@streeteasy.com"
        assert "attachment-1" not in payload

    def test_garbage_body_still_200(self, client, mock_ingest):
        response = client.post(_URL, content=b"\x00\x01", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert mock_ingest.call_args[0][0] == {}


class TestAlways200:
    def test_ignored_email(self, client, mock_ingest):
        mock_ingest.return_value = IngestResponse(
            status=IngestStatus.IGNORED,
            success=False,
            reason="Not a StreetEasy alert",
        )
        response = client.post(_URL, json={"to": "a@b.com"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ignored"
        assert body["reason"] == "Not a StreetEasy alert"
        assert "created" not in body

    def test_unexpected_exception(self, client, mock_ingest):
        mock_ingest.side_effect = RuntimeError("database exploded")
        response = client.post(_URL, json={"to": "a@b.com"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["success"] is False
        assert body["errors"] == ["database exploded"]


class TestWebhookSecret:
    def test_missing_header(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        response = client.post(_URL, json={"to": "a@b.com"})

        assert response.status_code == 401
        mock_ingest.assert_not_called()

    def test_wrong_header(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        response = client.post(_URL, json={"to": "a@b.com"}, headers={"X-Webhook-Secret": "nope"})

        assert response.status_code == 401

    def test_correct_header(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        response = client.post(_URL, json={"to": "a@b.com"}, headers={"X-Webhook-Secret": "s3cret"})

        assert response.status_code == 200
        mock_ingest.assert_called_once()

    def test_skip_verification(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("INBOUND_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("SKIP_WEBHOOK_VERIFICATION", "true")
        response = client.post(_URL, json={"to": "a@b.com"})

        assert response.status_code == 200


class TestMailgunSignature:
    def test_valid_signature(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("MAILGUN_SIGNING_KEY", "key-123")
        fields = _mailgun_fields(timestamp="1700000000", token="tok", signature=_sign("key-123", "1700000000", "tok"))

        response = client.post(_URL, data=fields)

        assert response.status_code == 200
        mock_ingest.assert_called_once()

    def test_invalid_signature(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("MAILGUN_SIGNING_KEY", "key-123")
        fields = _mailgun_fields(timestamp="1700000000", token="tok", signature="0" * 64)

        response = client.post(_URL, data=fields)

        assert response.status_code == 401
        mock_ingest.assert_not_called()

    def test_missing_signature_fields(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("MAILGUN_SIGNING_KEY", "key-123")
        response = client.post(_URL, data=_mailgun_fields())

        assert response.status_code == 401

    def test_skip_verification(self, client, mock_ingest, monkeypatch):
        monkeypatch.setenv("MAILGUN_SIGNING_KEY", "key-123")
        monkeypatch.setenv("SKIP_WEBHOOK_VERIFICATION", "true")
        response = client.post(_URL, data=_mailgun_fields())

        assert response.status_code == 200


class TestEndToEnd:
    """Real pipeline, storage mocked."""

    _HTML = (
        '<a href="https://streeteasy.com/rental/4412345?utm_source=alert">View</a>'
        "<p>345 East 12th Street, Apt 4B</p><p>East Village</p><p>$3,450/mo</p><p>1 bed</p>"
    )

    def test_mailgun_form_post_creates_listing(self, client):
        with patch("se_monitor.services.ingestion.store_raw_email", return_value="email-1"), \
                patch("se_monitor.services.ingestion.mark_email_processed"), \
                patch("se_monitor.services.ingestion.save_listings") as save:
            save.return_value = SaveResult(created=1)
            response = client.post(_URL, data=_mailgun_fields(**{"body-html": self._HTML}))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["success"] is True
        assert (body["created"], body["skipped"], body["total"]) == (1, 0, 1)

        user_id, listings, email_id = save.call_args[0]
        assert user_id == "user-1"
        assert listings[0].source_url == "https://streeteasy.com/rental/4412345"
        assert listings[0].price == 3450
        assert listings[0].unit == "4B"

    def test_missing_recipient_is_ignored_with_200(self, client):
        with patch("se_monitor.services.ingestion.store_raw_email") as store_raw:
            response = client.post(_URL, json={"from": "alerts@streeteasy.com"})

        assert response.status_code == 200
        assert response.json() == {
            "status": "ignored",
            "success": False,
            "reason": "Missing recipient address",
            "errors": [],
        }
        store_raw.assert_not_called()
