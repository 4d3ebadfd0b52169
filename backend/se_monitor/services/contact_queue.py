"""
Outbound contact queue.

Drafted inquiry emails about stored listings wait here until the user
approves or rejects them. Delivery itself happens elsewhere; this module only
owns the status transitions:

    pending -> approved -> sent
    pending -> rejected            (the listing is marked rejected too)

Every operation checks that the queue item belongs to the calling user.
Invalid transitions raise ValueError; a missing or foreign item raises
LookupError / PermissionError.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from se_monitor.db import supabase_admin
from se_monitor.models.contact_queue import BatchResult, ContactQueueItem, ContactStatus
from se_monitor.models.listing import ListingStatus

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ContactStatus, frozenset] = {
    ContactStatus.PENDING: frozenset({ContactStatus.APPROVED, ContactStatus.REJECTED}),
    ContactStatus.APPROVED: frozenset({ContactStatus.SENT}),
    ContactStatus.REJECTED: frozenset(),
    ContactStatus.SENT: frozenset(),
}


def _require_admin():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
    return supabase_admin


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_transition(current: ContactStatus, target: ContactStatus) -> None:
    """Raise ValueError unless ``current -> target`` is an allowed move."""
    if target not in _TRANSITIONS[current]:
        raise ValueError(f"Cannot move a {current.value} queue item to {target.value}")


def _get_item_for_user(item_id: str, user_id: str) -> ContactQueueItem:
    result = _require_admin().table("contact_queue").select("*").eq("id", item_id).execute()
    if not result.data:
        raise LookupError("Queue item not found")
    item = ContactQueueItem(**result.data[0])
    if item.user_id != user_id:
        raise PermissionError("Access denied")
    return item


def _update_item(item_id: str, updates: dict) -> ContactQueueItem:
    result = (
        _require_admin().table("contact_queue")
        .update(updates)
        .eq("id", item_id)
        .execute()
    )
    if not result.data:
        raise Exception("Failed to update queue item")
    return ContactQueueItem(**result.data[0])


def enqueue_contact(
    user_id: str,
    listing_id: str,
    subject: str,
    body: str,
    template_id: Optional[str] = None,
) -> ContactQueueItem:
    """
    Queue a drafted inquiry for one of the user's listings.

    Raises LookupError / PermissionError for a missing or foreign listing and
    ValueError when the listing is already queued.
    """
    admin = _require_admin()

    listing = admin.table("listings").select("id, user_id").eq("id", listing_id).execute()
    if not listing.data:
        raise LookupError("Listing not found")
    if listing.data[0].get("user_id") != user_id:
        raise PermissionError("Access denied")

    existing = (
        admin.table("contact_queue")
        .select("id")
        .eq("user_id", user_id)
        .eq("listing_id", listing_id)
        .execute()
    )
    if existing.data:
        raise ValueError("Listing already in queue")

    result = admin.table("contact_queue").insert({
        "user_id": user_id,
        "listing_id": listing_id,
        "template_id": template_id,
        "subject": subject,
        "body": body,
        "status": ContactStatus.PENDING.value,
        "created_at": _now_iso(),
    }).execute()
    if not result.data:
        raise Exception("Failed to queue contact")
    return ContactQueueItem(**result.data[0])


def approve(
    item_id: str,
    user_id: str,
    subject: Optional[str] = None,
    body: Optional[str] = None,
) -> ContactQueueItem:
    """Approve a pending item, optionally replacing the drafted subject/body."""
    item = _get_item_for_user(item_id, user_id)
    check_transition(item.status, ContactStatus.APPROVED)

    return _update_item(item_id, {
        "status": ContactStatus.APPROVED.value,
        "subject": (subject or "").strip() or item.subject,
        "body": (body or "").strip() or item.body,
        "processed_at": _now_iso(),
    })


def reject(item_id: str, user_id: str) -> ContactQueueItem:
    """Reject a pending item and mark its listing rejected."""
    item = _get_item_for_user(item_id, user_id)
    check_transition(item.status, ContactStatus.REJECTED)

    updated = _update_item(item_id, {
        "status": ContactStatus.REJECTED.value,
        "processed_at": _now_iso(),
    })
    (
        _require_admin().table("listings")
        .update({"status": ListingStatus.REJECTED.value})
        .eq("id", item.listing_id)
        .execute()
    )
    return updated


def mark_sent(item_id: str, user_id: str) -> ContactQueueItem:
    """Record that an approved item's email went out."""
    item = _get_item_for_user(item_id, user_id)
    check_transition(item.status, ContactStatus.SENT)

    return _update_item(item_id, {
        "status": ContactStatus.SENT.value,
        "processed_at": _now_iso(),
    })


def _batch(item_ids: list[str], user_id: str, action) -> BatchResult:
    result = BatchResult()
    for item_id in item_ids:
        try:
            action(item_id, user_id)
        except (LookupError, PermissionError, ValueError) as e:
            logger.info(f"Skipping queue item {item_id}: {e}")
            result.failed += 1
        else:
            result.succeeded += 1
    return result


def batch_approve(item_ids: list[str], user_id: str) -> BatchResult:
    return _batch(item_ids, user_id, approve)


def batch_reject(item_ids: list[str], user_id: str) -> BatchResult:
    return _batch(item_ids, user_id, reject)
