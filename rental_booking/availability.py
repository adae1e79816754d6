"""How many units of a listing are free over a date range."""
import datetime
from typing import Optional

from . import schemas
from .clients import ListingStore
from .ledger import BookingLedger


class AvailabilityCalculator:
    """
    Capacity is always derived from the ledger: free units are the listing's
    total quantity minus the quantity of every live booking that touches the
    requested window. There is no stored counter to drift.

    The check is deliberately coarse. Any overlap charges a booking's whole
    quantity against the whole window, without slicing the window into days.
    """

    def __init__(self, ledger: BookingLedger, listing_store: ListingStore):
        self.ledger = ledger
        self.listings = listing_store

    def reserved_units(
            self,
            listing_id: int,
            start_date: datetime.date,
            end_date: datetime.date,
            today: Optional[datetime.date] = None,
    ) -> int:
        return self.ledger.overlapping_quantity(listing_id, start_date, end_date, today=today)

    def free_units(
            self,
            listing_id: int,
            start_date: datetime.date,
            end_date: datetime.date,
            listing: Optional[schemas.Listing] = None,
            today: Optional[datetime.date] = None,
    ) -> int:
        if listing is None:
            listing = self.listings.get_listing(listing_id)
        reserved = self.reserved_units(listing_id, start_date, end_date, today=today)
        # The catalog may have shrunk the listing below what is already booked
        return max(listing.total_quantity - reserved, 0)

    def can_reserve(
            self,
            listing_id: int,
            quantity: int,
            start_date: datetime.date,
            end_date: datetime.date,
            listing: Optional[schemas.Listing] = None,
            today: Optional[datetime.date] = None,
    ) -> bool:
        return self.free_units(listing_id, start_date, end_date, listing=listing, today=today) >= quantity
