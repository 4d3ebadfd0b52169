"""
Inbound email webhook router.

Receives forwarded StreetEasy alert emails from Mailgun, SendGrid or Postmark
and hands them to the ingestion pipeline. The payload shape is detected from
its fields, so one URL serves all three providers.

Environment variables
---------------------
INBOUND_WEBHOOK_SECRET      When set, requests must carry it in the
                            X-Webhook-Secret header.
MAILGUN_SIGNING_KEY         When set, the Mailgun timestamp/token/signature
                            fields are checked (HMAC-SHA256).
SKIP_WEBHOOK_VERIFICATION   "true" disables both checks (local dev).

Endpoints:
  GET  /inbound-email   — health check for provider setup
  POST /inbound-email   — provider webhook

The POST handler answers 200 for everything except failed authentication
(401), so providers never retry an email that was received.
"""

import hashlib
import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from se_monitor.models.ingest import IngestResponse, IngestStatus
from se_monitor.services.inbound_email_adapter import decode_webhook_body
from se_monitor.services.ingestion import ingest_email

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Webhook authentication
# ---------------------------------------------------------------------------

def _skip_verification() -> bool:
    return os.getenv("SKIP_WEBHOOK_VERIFICATION", "").strip().lower() in ("1", "true", "yes")


def _verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    """
    Check the X-Webhook-Secret header against INBOUND_WEBHOOK_SECRET.

    No-op when the secret is not configured or verification is skipped.
    Raises 401 on a missing or wrong header.
    """
    expected = os.getenv("INBOUND_WEBHOOK_SECRET", "")
    if not expected or _skip_verification():
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


def verify_mailgun_signature(signing_key: str, timestamp: str, token: str, signature: str) -> bool:
    """
    Mailgun signs each request with HMAC-SHA256(signing_key, timestamp + token).
    """
    if not (timestamp and token and signature):
        return False
    digest = hmac.new(
        signing_key.encode(),
        f"{timestamp}{token}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(digest, signature)


def _check_mailgun_signature(payload: dict) -> None:
    signing_key = os.getenv("MAILGUN_SIGNING_KEY", "")
    if not signing_key or _skip_verification():
        return
    if not verify_mailgun_signature(
        signing_key,
        str(payload.get("timestamp", "")),
        str(payload.get("token", "")),
        str(payload.get("signature", "")),
    ):
        logger.error("Invalid Mailgun signature on inbound email webhook")
        raise HTTPException(status_code=401, detail="Invalid signature")


# ---------------------------------------------------------------------------
# Request decoding
# ---------------------------------------------------------------------------

async def _read_payload(request: Request) -> dict:
    """
    Decode the webhook body into a flat dict.

    Multipart and urlencoded bodies go through Starlette's form parser
    (attachments are dropped); anything else is decoded as JSON, falling
    back to urlencoded.
    """
    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" in content_type or "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw_body = await request.body()
    return decode_webhook_body(raw_body, content_type)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/inbound-email")
async def inbound_email_health() -> dict:
    return {
        "status": "ok",
        "endpoint": "inbound-email",
        "message": "Webhook is ready to receive emails",
    }


@router.post("/inbound-email", response_model=IngestResponse, response_model_exclude_none=True)
async def receive_inbound_email(
    request: Request,
    _: None = Depends(_verify_webhook_secret),
) -> IngestResponse:
    """
    Provider-agnostic inbound email webhook receiver.

    Always returns 200 so the provider does not retry on processing errors.
    Unexpected failures are logged and reported in the response body.
    """
    try:
        payload = await _read_payload(request)
    except Exception as e:
        logger.error(f"Failed to read inbound email request body: {e}")
        payload = {}

    _check_mailgun_signature(payload)

    try:
        return ingest_email(payload)
    except Exception as e:
        logger.exception(f"Unexpected error while processing inbound email: {e}")
        return IngestResponse(
            status=IngestStatus.PROCESSED,
            success=False,
            errors=[str(e)],
        )
