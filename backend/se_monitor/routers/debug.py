"""
Debug router: exercise the parser and inspect the audit log.

Both endpoints answer 403 when APP_ENV=production.

Endpoints:
  POST /parse-email   — run the extractor on a pasted body, nothing is stored
  GET  /email-stats   — inbound email counts for the last 24 hours
"""

import logging
import os

from fastapi import APIRouter, Depends, HTTPException

from se_monitor.models.inbound_email import NormalizedEmail
from se_monitor.models.ingest import ParseEmailRequest, ParseEmailResponse
from se_monitor.services.email_audit import get_email_stats
from se_monitor.services.listing_parser import parse_streeteasy_email

logger = logging.getLogger(__name__)

router = APIRouter()

_DEFAULT_SENDER = "alerts@streeteasy.com"
_DEFAULT_SUBJECT = "New Rental Listing"


def _require_non_production() -> None:
    if os.getenv("APP_ENV", "development").strip().lower() == "production":
        raise HTTPException(status_code=403, detail="Not available in production")


@router.post("/parse-email", response_model=ParseEmailResponse)
async def parse_email(
    request: ParseEmailRequest,
    _: None = Depends(_require_non_production),
) -> ParseEmailResponse:
    """
    Parse a raw StreetEasy alert body without storing anything.

    Sender and subject default to a StreetEasy alert so a bare body is
    classified as one.
    """
    if not request.html and not request.text:
        raise HTTPException(status_code=400, detail="Provide html or text in request body")

    email = NormalizedEmail(
        recipient="test@test.com",
        sender=request.sender or _DEFAULT_SENDER,
        subject=request.subject or _DEFAULT_SUBJECT,
        html_body=request.html or None,
        text_body=request.text or None,
    )
    result = parse_streeteasy_email(email)

    return ParseEmailResponse(
        success=result.success,
        listings_found=len(result.listings),
        listings=result.listings,
        candidates=result.candidates,
        errors=result.errors,
    )


@router.get("/email-stats")
async def email_stats(_: None = Depends(_require_non_production)) -> dict:
    """Counts for the last 24 hours plus the 10 most recent audit rows."""
    try:
        return get_email_stats()
    except Exception as e:
        logger.error(f"Failed to load email stats: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to load email stats: {str(e)}")
