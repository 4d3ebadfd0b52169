"""
Debug router tests: parse-email and email-stats.
"""

import os
import pytest
from unittest.mock import MagicMock, patch

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service-key.sig")

from fastapi.testclient import TestClient

_ALERT_HTML = (
    '<a href="https://streeteasy.com/rental/4412345">View</a>'
    "<p>345 East 12th Street</p><p>East Village</p><p>$3,450/mo</p><p>Studio</p>"
)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    from se_monitor.main import app
    return TestClient(app)


class TestParseEmail:
    def test_parses_html(self, client):
        response = client.post("/api/debug/parse-email", json={"html": _ALERT_HTML})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["listings_found"] == 1
        listing = body["listings"][0]
        assert listing["source_url"] == "https://streeteasy.com/rental/4412345"
        assert listing["price"] == 3450
        assert listing["bedrooms"] == 0
        assert listing["neighborhood"] == "East Village"
        assert len(body["candidates"]) == 1

    def test_parses_text(self, client):
        text = "https://streeteasy.com/rental/9 88 Orchard Street $2,800"
        response = client.post("/api/debug/parse-email", json={"text": text})

        assert response.json()["listings_found"] == 1

    def test_reports_invalid_candidates(self, client):
        html = '<a href="https://streeteasy.com/rental/1">View</a><p>Call for pricing</p>'
        response = client.post("/api/debug/parse-email", json={"html": html})

        body = response.json()
        assert body["success"] is False
        assert body["listings_found"] == 0
        assert len(body["candidates"]) == 1
        assert body["errors"] == ["No listings found in email"]

    def test_non_streeteasy_sender_and_subject(self, client):
        response = client.post("/api/debug/parse-email", json={
            "html": "<p>hello</p>",
            "sender": "friend@example.com",
            "subject": "Lunch",
        })

        assert response.json()["errors"] == ["Email does not appear to be from StreetEasy"]

    def test_requires_body(self, client):
        response = client.post("/api/debug/parse-email", json={"subject": "x"})
        assert response.status_code == 400

    def test_nothing_is_stored(self, client):
        with patch("se_monitor.services.listing_store.supabase_admin") as store_admin, \
                patch("se_monitor.services.email_audit.supabase_admin") as audit_admin:
            client.post("/api/debug/parse-email", json={"html": _ALERT_HTML})
        store_admin.table.assert_not_called()
        audit_admin.table.assert_not_called()

    def test_forbidden_in_production(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        response = client.post("/api/debug/parse-email", json={"html": _ALERT_HTML})
        assert response.status_code == 403


class TestEmailStats:
    def test_returns_stats(self, client):
        stats = {
            "since": "2024-01-01T00:00:00+00:00",
            "stats": {"total": 2, "processed": 1, "listings_extracted": 3},
            "recent_emails": [],
        }
        with patch("se_monitor.routers.debug.get_email_stats", return_value=stats):
            response = client.get("/api/debug/email-stats")

        assert response.status_code == 200
        assert response.json() == stats

    def test_storage_failure_is_500(self, client):
        with patch("se_monitor.routers.debug.get_email_stats", side_effect=Exception("down")):
            response = client.get("/api/debug/email-stats")
        assert response.status_code == 500

    def test_forbidden_in_production(self, client, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        with patch("se_monitor.routers.debug.get_email_stats") as stats:
            response = client.get("/api/debug/email-stats")
        assert response.status_code == 403
        stats.assert_not_called()


class TestHealthDb:
    def test_reachable(self, client):
        with patch("se_monitor.main.supabase_admin") as mock_admin:
            mock_admin.table.return_value.select.return_value.limit.return_value.execute.return_value = \
                MagicMock(data=[])
            response = client.get("/health/db")
        assert response.status_code == 200
        mock_admin.table.assert_called_with("listings")

    def test_unreachable(self, client):
        with patch("se_monitor.main.supabase_admin") as mock_admin:
            mock_admin.table.side_effect = Exception("connection refused")
            response = client.get("/health/db")
        assert response.status_code == 503

    def test_no_service_key(self, client):
        with patch("se_monitor.main.supabase_admin", None):
            response = client.get("/health/db")
        assert response.status_code == 503
