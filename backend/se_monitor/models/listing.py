"""
Pydantic models for listings.

ExtractedListing is the transient parser output (one per listing URL found in
an email). The enums mirror the status and source checks on the
``listings`` table.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel

# Persistence bound for monthly rent. The parser applies a tighter band.
MAX_PRICE = 1_000_000


class ListingStatus(str, Enum):
    NEW = "new"
    INTERESTED = "interested"
    VIEWED = "viewed"
    SAVED = "saved"
    REACHED_OUT = "reached_out"
    TOURING = "touring"
    APPLIED = "applied"
    REJECTED = "rejected"


class ListingSource(str, Enum):
    MANUAL = "manual"
    EMAIL = "email"
    TEST = "test"


class ExtractedListing(BaseModel):
    """A listing pulled out of one alert email. Never mutated after creation."""
    source_url: str
    address: Optional[str] = None
    unit: Optional[str] = None
    neighborhood: Optional[str] = None
    price: Optional[int] = None          # USD / month
    bedrooms: Optional[int] = None       # 0 = studio
    bathrooms: Optional[float] = None
    no_fee: bool = False
    image_url: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        """URL, address and an in-range price are all required for persistence."""
        return bool(
            self.source_url
            and self.address
            and self.price is not None
            and 0 < self.price <= MAX_PRICE
        )


class SaveResult(BaseModel):
    """Outcome of persisting one batch of extracted listings."""
    created: int = 0
    skipped: int = 0
    errors: list[str] = []
