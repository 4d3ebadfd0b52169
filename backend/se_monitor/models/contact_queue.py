"""
Pydantic models for the outbound contact queue.

A queue item is a drafted inquiry email about one stored listing, waiting for
the user to approve or reject it before anything is sent.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel


class ContactStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"


class ContactQueueItem(BaseModel):
    """Full contact_queue record from the database."""
    model_config = {"from_attributes": True}

    id: str
    user_id: str
    listing_id: str
    template_id: Optional[str] = None
    subject: str
    body: str
    status: ContactStatus = ContactStatus.PENDING
    created_at: str
    processed_at: Optional[str] = None


class BatchResult(BaseModel):
    """Counts returned by the batch approve / reject operations."""
    succeeded: int = 0
    failed: int = 0
