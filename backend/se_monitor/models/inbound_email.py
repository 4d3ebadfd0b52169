"""
Provider-agnostic inbound email model.

Mailgun, SendGrid and Postmark all post the same email under different field
names. The adapter layer maps every one of them onto NormalizedEmail before the
pipeline ever sees the data; nothing downstream knows which provider sent it.
"""

from typing import Optional
from pydantic import BaseModel


class NormalizedEmail(BaseModel):
    """
    Normalized inbound email, one per webhook call.

    recipient and sender hold bare, lowercased addresses ("a@b.com"), never the
    "Name <a@b.com>" display form. Either may be an empty string when the
    provider omitted it; the pipeline rejects an empty recipient before
    extraction.
    """

    recipient: str = ""
    sender: str = ""
    subject: str = ""
    html_body: Optional[str] = None
    text_body: Optional[str] = None
    raw_headers: Optional[dict[str, str]] = None

    @property
    def body(self) -> Optional[str]:
        """HTML body when present, otherwise the plain-text body."""
        return self.html_body or self.text_body
