"""
Maps an inbound email to the user it belongs to.

Resolution order:
  1. Plus-addressed recipient  ``{user_id}+se@<inbound domain>``. The token
     before ``+se`` is the user id.
  2. Sender address looked up in ``user_emails`` (addresses users registered
     as the ones they forward from), case-insensitive exact match.

No match is not an error: callers decide whether to ignore the email or keep
its listings as orphans.
"""

import logging
import re
from typing import Optional

from se_monitor.db import supabase_admin

logger = logging.getLogger(__name__)

_PLUS_ADDRESS_RE = re.compile(r"^([a-zA-Z0-9_-]+)\+se@", re.IGNORECASE)


def extract_plus_token(recipient: str) -> Optional[str]:
    """
    Return the user token from a plus-addressed recipient.

      "k57abc123+se@listings.example.com"  -> "k57abc123"
      "someone@example.com"                -> None
    """
    match = _PLUS_ADDRESS_RE.match((recipient or "").strip())
    return match.group(1) if match else None


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` only matches itself."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def lookup_user_by_email(email: str) -> Optional[str]:
    """
    Find the user who registered ``email`` as a forwarding address.

    Stored addresses keep whatever case the user typed, so the query is an
    ``ilike`` on the escaped address and the rows are compared again in
    lowercase. Returns the user id, or None when not found or when the
    lookup fails.
    """
    address = (email or "").strip().lower()
    if not address:
        return None
    try:
        result = (
            supabase_admin.table("user_emails")
            .select("user_id, email")
            .ilike("email", _escape_like(address))
            .execute()
        )
    except Exception as e:
        logger.warning(f"Failed to look up user by email '{email}': {e}")
        return None

    for row in result.data or []:
        if (row.get("email") or "").strip().lower() == address:
            return row["user_id"]
    return None


def resolve_user(recipient: str, sender: str) -> Optional[str]:
    """Return the user id for an inbound email, or None."""
    token = extract_plus_token(recipient)
    if token:
        return token
    return lookup_user_by_email(sender)
