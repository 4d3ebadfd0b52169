"""
StreetEasy alert detection.

Decides whether a normalized email is worth handing to the listing parser.
Any single signal is enough: a missed alert loses listings silently, while a
false positive just parses to zero listings.
"""

from se_monitor.models.inbound_email import NormalizedEmail

_SUBJECT_PHRASES = (
    "new listing",
    "price drop",
    "new rental",
    "rental alert",
    "new apartments",
    "streeteasy",
)


def sender_signal(sender: str) -> bool:
    return "streeteasy" in (sender or "").lower()


def subject_signal(subject: str) -> bool:
    subject_lower = (subject or "").lower()
    return any(phrase in subject_lower for phrase in _SUBJECT_PHRASES)


def body_signal(content: str) -> bool:
    # "streeteasy.com" is covered by the bare word
    return "streeteasy" in (content or "").lower()


def is_streeteasy_email(email: NormalizedEmail) -> bool:
    """Return True when sender, subject or body points at a StreetEasy alert."""
    return (
        sender_signal(email.sender)
        or subject_signal(email.subject)
        or body_signal(email.html_body or "")
        or body_signal(email.text_body or "")
    )
