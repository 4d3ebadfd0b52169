"""
StreetEasy alert classifier tests.
"""

import os
import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service-key.sig")

from se_monitor.models.inbound_email import NormalizedEmail
from se_monitor.services.classifier import (
    body_signal,
    is_streeteasy_email,
    sender_signal,
    subject_signal,
)


def _email(sender="friend@example.com", subject="Hello", html=None, text=None) -> NormalizedEmail:
    return NormalizedEmail(
        recipient="user123+se@listings.example.com",
        sender=sender,
        subject=subject,
        html_body=html,
        text_body=text,
    )


class TestSignals:
    def test_sender(self):
        assert sender_signal("alerts@streeteasy.com")
        assert sender_signal("noreply@StreetEasy.com")
        assert not sender_signal("friend@example.com")
        assert not sender_signal("")

    @pytest.mark.parametrize("subject", [
        "3 New Listings for your search",
        "Price drop on 345 East 12th Street",
        "New rental in Astoria",
        "Your Rental Alert",
        "New apartments matching Brooklyn 1BR",
        "Fwd: StreetEasy update",
    ])
    def test_subject_phrases(self, subject):
        assert subject_signal(subject)

    def test_unrelated_subject(self):
        assert not subject_signal("Team lunch")
        assert not subject_signal(None)

    def test_body(self):
        assert body_signal('<a href="https://streeteasy.com/rental/1">x</a>')
        assert not body_signal("nothing here")


class TestIsStreetEasyEmail:
    """Any one signal is enough."""

    def test_sender_only(self):
        assert is_streeteasy_email(_email(sender="alerts@streeteasy.com"))

    def test_subject_only(self):
        assert is_streeteasy_email(_email(subject="Price Drop Alert"))

    def test_html_body_only(self):
        assert is_streeteasy_email(_email(html="<p>Powered by StreetEasy</p>"))

    def test_text_body_only(self):
        assert is_streeteasy_email(_email(text="See https://streeteasy.com/rental/1"))

    def test_forwarded_from_personal_address(self):
        email = _email(sender="me@gmail.com", subject="Fwd: New Listings")
        assert is_streeteasy_email(email)

    def test_no_signal(self):
        assert not is_streeteasy_email(_email(html="<p>Minutes from the meeting</p>"))

    def test_no_body_no_signal(self):
        assert not is_streeteasy_email(_email())
