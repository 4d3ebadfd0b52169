"""
Listing persistence with per-user deduplication.

A user never holds two listings with the same source_url. Orphaned listings
(user_id NULL) are deduplicated only against other orphans. The database
enforces both with unique indexes (see supabase/migrations); the existence
check here only avoids pointless inserts, and a unique violation on insert
still counts as "skipped".
"""

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from bs4 import BeautifulSoup

from se_monitor.db import supabase_admin
from se_monitor.models.listing import (
    MAX_PRICE,
    ExtractedListing,
    ListingSource,
    ListingStatus,
    SaveResult,
)

logger = logging.getLogger(__name__)

_LISTING_URL_RE = re.compile(r"^https://(?:www\.)?streeteasy\.com/.+")

MAX_BEDROOMS = 20

# Column length caps applied before insert
_ADDRESS_MAX = 200
_NEIGHBORHOOD_MAX = 100
_IMAGE_URL_MAX = 500
_UNIT_MAX = 20


class DuplicateListingError(Exception):
    """The (user_id, source_url) pair already exists."""


def _require_admin():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
    return supabase_admin


def _is_unique_violation(exc: Exception) -> bool:
    """PostgREST reports Postgres error 23505 for unique constraint violations."""
    if getattr(exc, "code", None) == "23505":
        return True
    return "duplicate key" in str(exc).lower()


def _sanitize(value: Optional[str], max_length: int) -> Optional[str]:
    """Text content of ``value`` with markup removed, capped at ``max_length``."""
    if value is None:
        return None
    cleaned = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    cleaned = cleaned[:max_length].strip()
    return cleaned or None


def _sanitize_url(value: Optional[str], max_length: int) -> Optional[str]:
    """A URL is kept as-is or dropped; markup inside one means it is not a URL."""
    if not value:
        return None
    if any(char in value for char in '<>"') or "javascript:" in value.lower():
        logger.warning(f"Dropping malformed image_url: {value[:80]!r}")
        return None
    return value.strip()[:max_length] or None


def validate_listing(listing: ExtractedListing) -> None:
    """
    Raise ValueError when a listing must not be stored.

    Checks the source URL shape and the (0, 1_000_000] price bound.
    """
    url = listing.source_url or ""
    if not _LISTING_URL_RE.match(url):
        raise ValueError("source_url must be a StreetEasy URL (https://streeteasy.com/...)")
    if "<" in url or ">" in url or "javascript:" in url.lower():
        raise ValueError("Invalid characters in source_url")
    if not listing.address:
        raise ValueError("address is required")
    if listing.price is None or listing.price <= 0:
        raise ValueError("price must be a positive number")
    if listing.price > MAX_PRICE:
        raise ValueError(f"price seems unreasonably high (max: ${MAX_PRICE:,}/month)")


def build_listing_row(
    user_id: Optional[str],
    listing: ExtractedListing,
    email_id: Optional[str] = None,
) -> dict:
    """Turn a validated ExtractedListing into a ``listings`` insert payload."""
    bedrooms = listing.bedrooms
    if bedrooms is not None and not 0 <= bedrooms <= MAX_BEDROOMS:
        bedrooms = None

    return {
        "user_id": user_id,
        "source_url": listing.source_url,
        "address": _sanitize(listing.address, _ADDRESS_MAX),
        "unit": _sanitize(listing.unit, _UNIT_MAX),
        "neighborhood": _sanitize(listing.neighborhood, _NEIGHBORHOOD_MAX),
        "price": listing.price,
        "bedrooms": bedrooms,
        "bathrooms": listing.bathrooms,
        "no_fee": listing.no_fee,
        "image_url": _sanitize_url(listing.image_url, _IMAGE_URL_MAX),
        "status": ListingStatus.NEW.value,
        "source": ListingSource.EMAIL.value,
        "found_at": datetime.now(timezone.utc).isoformat(),
        "email_id": email_id,
    }


def existing_urls_for(user_id: Optional[str], urls: Iterable[str]) -> set[str]:
    """
    Return the subset of ``urls`` already stored for ``user_id``.

    With user_id None, only orphaned listings are considered. A failed lookup
    returns an empty set: the unique index still stops duplicates at insert.
    """
    urls = list(dict.fromkeys(urls))
    if not urls:
        return set()

    try:
        query = _require_admin().table("listings").select("source_url").in_("source_url", urls)
        if user_id is None:
            query = query.is_("user_id", "null")
        else:
            query = query.eq("user_id", user_id)
        result = query.execute()
    except Exception as e:
        logger.warning(f"Failed to fetch existing listing URLs for user {user_id!r}: {e}")
        return set()

    return {row["source_url"] for row in result.data or []}


def create_listing(
    user_id: Optional[str],
    listing: ExtractedListing,
    email_id: Optional[str] = None,
) -> str:
    """
    Insert one listing and return its id.

    Raises:
        ValueError: listing fails validation, or no admin client
        DuplicateListingError: (user_id, source_url) already stored
        Exception: any other storage failure
    """
    validate_listing(listing)
    row = build_listing_row(user_id, listing, email_id)
    admin = _require_admin()

    try:
        result = admin.table("listings").insert(row).execute()
    except Exception as e:
        if _is_unique_violation(e):
            raise DuplicateListingError(listing.source_url) from e
        raise Exception(f"Failed to insert listing: {str(e)}")

    if not result.data:
        raise Exception("Failed to insert listing: insert returned no data")
    return result.data[0]["id"]


def save_listings(
    user_id: Optional[str],
    listings: list[ExtractedListing],
    email_id: Optional[str] = None,
) -> SaveResult:
    """
    Store every listing the user does not already have.

    Listings are written one at a time, in order, so a URL written earlier in
    the batch is seen as a duplicate later in the same batch. A failure on
    one listing is recorded in ``errors`` and the batch continues.
    """
    result = SaveResult()
    already_stored = existing_urls_for(user_id, (listing.source_url for listing in listings))

    for listing in listings:
        if listing.source_url in already_stored:
            result.skipped += 1
            continue

        try:
            create_listing(user_id, listing, email_id)
        except DuplicateListingError:
            logger.info(f"Listing {listing.source_url} was stored concurrently; skipping")
            result.skipped += 1
            already_stored.add(listing.source_url)
        except Exception as e:
            logger.warning(f"Could not store listing {listing.source_url}: {e}")
            result.errors.append(f"{listing.source_url}: {e}")
        else:
            result.created += 1
            already_stored.add(listing.source_url)

    return result
