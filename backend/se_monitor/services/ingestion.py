"""
Inbound email ingestion pipeline.

    raw payload
      -> normalize      (reject: no recipient)
      -> archive        (raw email stored for audit, best-effort)
      -> classify       (reject: not a StreetEasy alert)
      -> resolve user   (reject: unknown recipient, unless orphans are kept)
      -> extract        (listings from the body)
      -> save           (dedup + insert, per-listing errors collected)

Each stage returns a StageResult; a rejected stage ends the pipeline with an
"ignored" response. ingest_email never lets a rejection escape as an
exception. Unexpected exceptions are left to the HTTP handler, which still
answers 200.

Environment variables
---------------------
STORE_ORPHAN_LISTINGS   "true" keeps listings from emails whose recipient
                        resolves to no user (stored with user_id NULL).
                        Default: such emails are ignored.
"""

import logging
import os
from typing import Any, Mapping, Optional, Union

from se_monitor.models.inbound_email import NormalizedEmail
from se_monitor.models.ingest import IngestResponse, IngestStatus, StageResult
from se_monitor.services.classifier import is_streeteasy_email
from se_monitor.services.email_audit import mark_email_processed, store_raw_email
from se_monitor.services.inbound_email_adapter import decode_webhook_body, normalize_payload
from se_monitor.services.listing_parser import parse_streeteasy_email
from se_monitor.services.listing_store import save_listings
from se_monitor.services.user_resolver import resolve_user

logger = logging.getLogger(__name__)

RawPayload = Union[Mapping[str, Any], bytes, str]

REASON_NO_RECIPIENT = "Missing recipient address"
REASON_NOT_ALERT = "Not a StreetEasy alert"
REASON_NO_USER = "No user found for forwarding address"


def _store_orphans() -> bool:
    return os.getenv("STORE_ORPHAN_LISTINGS", "").strip().lower() in ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def normalize_stage(raw_payload: RawPayload, content_type: str = "") -> StageResult[NormalizedEmail]:
    if isinstance(raw_payload, (bytes, str)):
        payload = decode_webhook_body(raw_payload, content_type)
    else:
        payload = raw_payload

    email = normalize_payload(payload)
    if not email.recipient:
        return StageResult.reject(REASON_NO_RECIPIENT)
    return StageResult.accept(email)


def archive_stage(email: NormalizedEmail) -> Optional[str]:
    """Store the raw email. Returns its id, or None when the audit write failed."""
    try:
        email_id = store_raw_email(email)
    except Exception as e:
        logger.error(f"Failed to archive inbound email from {email.sender!r}: {e}")
        return None
    logger.info(f"Stored inbound email {email_id}")
    return email_id


def classify_stage(email: NormalizedEmail) -> StageResult[NormalizedEmail]:
    if not is_streeteasy_email(email):
        return StageResult.reject(REASON_NOT_ALERT)
    return StageResult.accept(email)


def resolve_stage(email: NormalizedEmail) -> StageResult[Optional[str]]:
    user_id = resolve_user(email.recipient, email.sender)
    if user_id:
        return StageResult.accept(user_id)
    if _store_orphans():
        logger.info(f"No user for {email.recipient!r}; keeping listings as orphans")
        return StageResult.accept(None)
    return StageResult.reject(REASON_NO_USER)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _ignored(reason: str, email_id: Optional[str] = None) -> IngestResponse:
    return IngestResponse(
        status=IngestStatus.IGNORED,
        success=False,
        reason=reason,
        email_id=email_id,
    )


def ingest_email(raw_payload: RawPayload, content_type: str = "") -> IngestResponse:
    """
    Run one inbound webhook payload through the whole pipeline.

    ``raw_payload`` is either an already-decoded mapping (JSON object, form
    fields) or the raw request body, decoded according to ``content_type``.
    """
    normalized = normalize_stage(raw_payload, content_type)
    if not normalized.ok:
        logger.warning(f"Ignoring inbound email: {normalized.reason}")
        return _ignored(normalized.reason)

    email = normalized.value
    logger.info(
        f"Received inbound email: recipient={email.recipient!r} sender={email.sender!r} "
        f"subject={email.subject!r} html={email.html_body is not None} text={email.text_body is not None}"
    )

    email_id = archive_stage(email)

    classified = classify_stage(email)
    if not classified.ok:
        logger.info(f"Ignoring email {email_id}: {classified.reason}")
        mark_email_processed(email_id, 0)
        return _ignored(classified.reason, email_id)

    resolved = resolve_stage(email)
    if not resolved.ok:
        logger.warning(f"Ignoring email {email_id} to {email.recipient!r}: {resolved.reason}")
        mark_email_processed(email_id, 0)
        return _ignored(resolved.reason, email_id)
    user_id = resolved.value

    parsed = parse_streeteasy_email(email)
    logger.info(f"Parsed {len(parsed.listings)} listings from email {email_id}")

    if not parsed.listings:
        mark_email_processed(email_id, 0)
        if email.body is None:
            return IngestResponse(
                status=IngestStatus.PROCESSED,
                success=False,
                email_id=email_id,
                errors=parsed.errors,
            )
        return IngestResponse(
            status=IngestStatus.PROCESSED,
            success=True,
            email_id=email_id,
            created=0,
            skipped=0,
            total=0,
        )

    saved = save_listings(user_id, parsed.listings, email_id)
    mark_email_processed(email_id, saved.created)
    logger.info(
        f"Email {email_id}: {saved.created} created, {saved.skipped} skipped, "
        f"{len(saved.errors)} errors"
    )

    return IngestResponse(
        status=IngestStatus.PROCESSED,
        success=True,
        email_id=email_id,
        created=saved.created,
        skipped=saved.skipped,
        total=len(parsed.listings),
        errors=saved.errors,
    )
