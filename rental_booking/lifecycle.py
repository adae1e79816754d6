"""Create, cancel and age bookings while keeping listings from being oversold."""
import datetime
import logging
import threading
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .availability import AvailabilityCalculator
from .clients import ListingStore
from .config import settings
from .exceptions import (
    BookingServiceError,
    CapacityExceededError,
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from .ledger import BookingDraft, BookingLedger, validate_draft
from .models import BookingStatus

logger = logging.getLogger("booking_service")

# Postgres: lock_not_available, serialization_failure, deadlock_detected
LOCK_CONFLICT_PGCODES = {"55P03", "40001", "40P01"}


def is_lock_conflict(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) in LOCK_CONFLICT_PGCODES:
        return True
    return "database is locked" in str(exc.orig)


class ListingLockRegistry:
    """One in-process lock per listing, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def lock_for(self, listing_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(listing_id, threading.Lock())

    @contextmanager
    def hold(self, listing_id: int):
        with self.lock_for(listing_id):
            yield


listing_locks = ListingLockRegistry()


class BookingLifecycleManager:

    def __init__(
            self,
            db: Session,
            listing_store: ListingStore,
            locks: ListingLockRegistry = None,
            max_retries: int = None,
    ):
        self.db = db
        self.ledger = BookingLedger(db)
        self.listings = listing_store
        self.availability = AvailabilityCalculator(self.ledger, listing_store)
        self.locks = locks or listing_locks
        if max_retries is None:
            max_retries = settings.BOOKING_MAX_RETRIES
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        # Total attempts per reservation, the first one included
        self.max_retries = max_retries

    def book_package(
            self,
            renter_id: int,
            listing_id: int,
            quantity: int,
            start_date: datetime.date,
            end_date: datetime.date,
            today: Optional[datetime.date] = None,
    ) -> models.Booking:
        """
        Reserves `quantity` units of a listing for [start_date, end_date].

        Raises ValidationError, ListingNotFoundError or CapacityExceededError.
        A failed call leaves nothing in the ledger.
        """
        today = today or datetime.date.today()
        draft = BookingDraft(
            listing_id=listing_id,
            renter_id=renter_id,
            quantity=quantity,
            start_date=start_date,
            end_date=end_date,
        )
        validate_draft(draft)
        if start_date < today:
            raise ValidationError("Booking cannot start in the past.")

        listing = self.listings.get_listing(listing_id)
        draft.listing_owner_id = listing.owner_id

        for attempt in range(1, self.max_retries + 1):
            try:
                return self._reserve(listing, draft, today)
            except ConcurrencyConflictError as e:
                logger.warning(
                    f"Reservation on listing {listing_id} lost a race "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )

        raise CapacityExceededError(
            f"Listing {listing_id} could not be reserved for these dates; please try again."
        )

    def _reserve(self, listing: schemas.Listing, draft: BookingDraft, today: datetime.date) -> models.Booking:
        # Check-then-create must not interleave with another reservation on the
        # same listing: in-process lock first, then the database row lock.
        with self.locks.hold(listing.id):
            try:
                self.ledger.lock_listing(listing.id)

                free = self.availability.free_units(
                    listing.id, draft.start_date, draft.end_date, listing=listing, today=today
                )
                if free < draft.quantity:
                    logger.info(
                        f"Rejected booking of {draft.quantity} on listing {listing.id} "
                        f"for {draft.start_date}..{draft.end_date}: only {free} free."
                    )
                    raise CapacityExceededError(
                        f"Only {free} of {listing.total_quantity} units are free for these dates."
                    )

                booking = self.ledger.create(draft, commit=False)

                # Re-validate with the new row in place before committing
                reserved = self.ledger.overlapping_quantity(
                    listing.id, draft.start_date, draft.end_date, today=today
                )
                if reserved > listing.total_quantity:
                    raise ConcurrencyConflictError(
                        f"{reserved} units would be reserved on listing {listing.id} "
                        f"which only has {listing.total_quantity}."
                    )
                self.db.commit()
            except BookingServiceError:
                self.db.rollback()
                raise
            except OperationalError as e:
                self.db.rollback()
                if is_lock_conflict(e):
                    raise ConcurrencyConflictError("Listing is locked by another reservation.") from e
                raise
            except SQLAlchemyError:
                self.db.rollback()
                raise

        self.db.refresh(booking)
        logger.info(
            f"Booking {booking.id} created: {booking.quantity} x listing {booking.listing_id} "
            f"for renter {booking.renter_id}, {booking.start_date}..{booking.end_date}."
        )
        return booking

    def cancel_booking(self, booking_id: int, caller: schemas.Caller) -> models.Booking:
        """
        Cancels a live booking. Capacity is released at once because cancelled
        bookings are left out of every availability sum.
        """
        booking = self.ledger.get_or_raise(booking_id)
        if booking.renter_id != caller.id and not caller.is_admin:
            raise ForbiddenError("You can only cancel your own bookings.")
        if booking.status.is_terminal:
            raise InvalidTransitionError(f"Booking {booking_id} is already {booking.status.value}.")
        return self.ledger.transition(booking_id, BookingStatus.CANCELLED)

    def delete_booking_history(self, booking_id: int, caller: schemas.Caller) -> None:
        self.ledger.delete_history(booking_id, caller.id, is_admin=caller.is_admin)

    def advance(self, today: Optional[datetime.date] = None) -> tuple[int, int]:
        """
        Moves bookings along with the calendar: REQUESTED -> ACTIVE once the
        window has begun, ACTIVE -> COMPLETED once it has ended.
        Returns (activated, completed).
        """
        today = today or datetime.date.today()
        activated = completed = 0

        for booking in self.ledger.due_for_activation(today):
            if self._try_transition(booking.id, BookingStatus.ACTIVE):
                activated += 1

        # Picks up bookings activated above that are already over
        for booking in self.ledger.due_for_completion(today):
            if self._try_transition(booking.id, BookingStatus.COMPLETED):
                completed += 1

        return activated, completed

    def _try_transition(self, booking_id: int, new_status: BookingStatus) -> bool:
        try:
            self.ledger.transition(booking_id, new_status)
            return True
        except InvalidTransitionError as e:
            # Usually a cancellation that landed between the scan and the update
            logger.info(f"Skipping booking {booking_id}: {e}")
            return False
