"""
Inbound email audit log.

Every email that reaches the webhook with a recipient is written to
``inbound_emails`` before any parsing, so systematic parser failures can be
diagnosed from the stored raw bodies and the per-email listing counts.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from se_monitor.db import supabase_admin
from se_monitor.models.inbound_email import NormalizedEmail

logger = logging.getLogger(__name__)

_RECENT_EMAIL_COLUMNS = "id, recipient, sender, subject, processed, listings_extracted, created_at"


def _require_admin():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
    return supabase_admin


def _generate_email_id() -> str:
    """Generate a new UUID string for an inbound email row."""
    return str(uuid.uuid4())


def store_raw_email(email: NormalizedEmail) -> str:
    """
    Insert the normalized email into ``inbound_emails`` and return its id.

    Raises:
        Exception: If the insert fails
    """
    email_id = _generate_email_id()
    row = {
        "id": email_id,
        "recipient": email.recipient,
        "sender": email.sender,
        "subject": email.subject,
        "html_body": email.html_body,
        "text_body": email.text_body,
        "raw_headers": email.raw_headers,
        "processed": False,
        "listings_extracted": 0,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        result = _require_admin().table("inbound_emails").insert(row).execute()
    except Exception as e:
        raise Exception(f"Failed to store inbound email: {str(e)}")

    if result.data:
        return result.data[0].get("id", email_id)
    return email_id


def mark_email_processed(email_id: Optional[str], listings_extracted: int) -> None:
    """
    Flag an audited email as processed with the number of listings it produced.

    Best-effort: a missing id is a no-op and failures are logged.
    """
    if not email_id:
        return
    try:
        (
            _require_admin().table("inbound_emails")
            .update({
                "processed": True,
                "listings_extracted": listings_extracted,
                "processed_at": datetime.now(timezone.utc).isoformat(),
            })
            .eq("id", email_id)
            .execute()
        )
    except Exception as e:
        logger.warning(f"Failed to mark inbound email {email_id} processed: {e}")


def get_email_stats(since: Optional[datetime] = None, recent_limit: int = 10) -> dict:
    """
    Summarize the audit log.

    Counts emails received since ``since`` (default: last 24 hours) and
    returns the ``recent_limit`` most recent rows without their bodies.
    """
    admin = _require_admin()
    if since is None:
        since = datetime.now(timezone.utc) - timedelta(hours=24)

    window = (
        admin.table("inbound_emails")
        .select("id, processed, listings_extracted")
        .gte("created_at", since.isoformat())
        .execute()
    )
    rows = window.data or []

    recent = (
        admin.table("inbound_emails")
        .select(_RECENT_EMAIL_COLUMNS)
        .order("created_at", desc=True)
        .limit(recent_limit)
        .execute()
    )

    return {
        "since": since.isoformat(),
        "stats": {
            "total": len(rows),
            "processed": sum(1 for r in rows if r.get("processed")),
            "listings_extracted": sum(r.get("listings_extracted") or 0 for r in rows),
        },
        "recent_emails": recent.data or [],
    }
