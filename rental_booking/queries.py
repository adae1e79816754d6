"""Read-only projections over the booking ledger."""
import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .clients import IdentityService
from .ledger import BookingLedger
from .models import NON_TERMINAL_STATUSES, BookingStatus


class BookingQueries:
    """All views sort newest first and paginate with skip/limit."""

    def __init__(self, db: Session, identity: Optional[IdentityService] = None):
        self.ledger = BookingLedger(db)
        self.identity = identity

    def current_bookings(
            self,
            user_id: Optional[int] = None,
            skip: int = 0,
            limit: int = 100,
            today: Optional[datetime.date] = None,
    ) -> list[models.Booking]:
        """
        Requested and active bookings that have not ended yet. A booking past
        its end date is history even before the sweep has completed it.
        """
        return self.ledger.scan(
            renter_id=user_id,
            statuses=NON_TERMINAL_STATUSES,
            ending_on_or_after=today or datetime.date.today(),
            skip=skip,
            limit=limit,
        )

    def all_bookings(self, skip: int = 0, limit: int = 100) -> tuple[list[models.Booking], int]:
        return self.ledger.scan(skip=skip, limit=limit), self.ledger.count()

    def user_current_bookings(
            self, user_id: int, skip: int = 0, limit: int = 100, today: Optional[datetime.date] = None,
    ) -> list[models.Booking]:
        return self.current_bookings(user_id=user_id, skip=skip, limit=limit, today=today)

    def user_bookings(self, user_id: int, skip: int = 0, limit: int = 100) -> list[models.Booking]:
        return self.ledger.scan(renter_id=user_id, skip=skip, limit=limit)

    def booking_requests(
            self,
            listing_owner_id: int,
            statuses: Optional[Iterable[BookingStatus]] = None,
            skip: int = 0,
            limit: int = 100,
    ) -> list[schemas.BookingRequestRead]:
        """
        Bookings on the owner's listings, each with the renter's profile.
        Each distinct renter on the page costs one identity lookup.
        """
        if self.identity is None:
            raise RuntimeError("booking_requests needs an IdentityService")

        bookings = self.ledger.scan(
            listing_owner_id=listing_owner_id, statuses=statuses, skip=skip, limit=limit
        )
        profiles: dict[int, Optional[schemas.UserProfile]] = {}
        rows = []
        for booking in bookings:
            if booking.renter_id not in profiles:
                profiles[booking.renter_id] = self.identity.get_user(booking.renter_id)
            base = schemas.BookingRead.model_validate(booking).model_dump(exclude={"is_history"})
            rows.append(schemas.BookingRequestRead(**base, renter=profiles[booking.renter_id]))
        return rows
