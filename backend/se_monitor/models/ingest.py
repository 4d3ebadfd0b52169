"""
Models for the email ingestion pipeline.

Models:
  StageResult         — ok/value or rejected/reason, passed between pipeline stages
  ParseResult         — listings extracted from one email
  IngestResponse      — JSON body returned by the inbound webhook
  ParseEmailRequest   — request body for the debug parse endpoint
  ParseEmailResponse  — response body for the debug parse endpoint
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar
from pydantic import BaseModel

from se_monitor.models.listing import ExtractedListing

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """
    Result of a single pipeline stage.

    A rejected stage is a normal outcome (not an error): the pipeline stops and
    reports ``reason`` in an "ignored" response.
    """
    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, value: T) -> "StageResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def reject(cls, reason: str) -> "StageResult[T]":
        return cls(ok=False, reason=reason)


class ParseResult(BaseModel):
    """
    Listings extracted from one email.

    candidates holds every listing built from a listing URL, before the
    validity check; listings holds only the valid ones.
    """
    success: bool
    listings: list[ExtractedListing] = []
    candidates: list[ExtractedListing] = []
    errors: list[str] = []


class IngestStatus(str, Enum):
    IGNORED = "ignored"
    PROCESSED = "processed"


class IngestResponse(BaseModel):
    """
    Webhook response body. Always sent with HTTP 200.

    created/skipped/total are only set once listings reached the
    persistence stage.
    """
    status: IngestStatus
    success: bool
    reason: Optional[str] = None
    email_id: Optional[str] = None
    created: Optional[int] = None
    skipped: Optional[int] = None
    total: Optional[int] = None
    errors: list[str] = []


class ParseEmailRequest(BaseModel):
    """Request body for POST /api/debug/parse-email."""
    html: Optional[str] = None
    text: Optional[str] = None
    sender: Optional[str] = None
    subject: Optional[str] = None


class ParseEmailResponse(BaseModel):
    """Response body for POST /api/debug/parse-email."""
    success: bool
    listings_found: int
    listings: list[ExtractedListing] = []
    candidates: list[ExtractedListing] = []
    errors: list[str] = []
