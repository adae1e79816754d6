import json
import logging
import datetime
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .exceptions import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import ALLOWED_TRANSITIONS, NON_TERMINAL_STATUSES, TERMINAL_STATUSES, BookingStatus

logger = logging.getLogger("booking_service")


@dataclass
class BookingDraft:
    listing_id: Optional[int]
    renter_id: Optional[int]
    quantity: Optional[int]
    start_date: Optional[datetime.date]
    end_date: Optional[datetime.date]
    listing_owner_id: Optional[int] = None


def validate_draft(draft: BookingDraft) -> None:
    """Raises ValidationError unless the draft describes a bookable request."""
    if draft.listing_id is None:
        raise ValidationError("A listing is required.")
    if draft.renter_id is None:
        raise ValidationError("A renter is required.")
    if isinstance(draft.quantity, bool) or not isinstance(draft.quantity, int):
        raise ValidationError("Quantity must be a whole number.")
    if draft.quantity < 1:
        raise ValidationError("Quantity must be at least 1.")
    if draft.start_date is None or draft.end_date is None:
        raise ValidationError("Start and end dates are required.")
    if draft.start_date > draft.end_date:
        raise ValidationError("Booking end date must not be before start date.")


class BookingLedger:
    """
    Durable record of every booking and its current status.

    Bookings are only ever created, moved along the lifecycle, or (once
    terminal) deleted from history. Writes commit before returning so the
    query views see them immediately.
    """

    def __init__(self, db: Session):
        self.db = db

    # --- Writes ---

    def create(self, draft: BookingDraft, commit: bool = True) -> models.Booking:
        """
        Inserts a REQUESTED booking together with its outbox event.
        With commit=False the caller owns the transaction; the row is only flushed.
        """
        validate_draft(draft)
        db_booking = models.Booking(
            listing_id=draft.listing_id,
            renter_id=draft.renter_id,
            listing_owner_id=draft.listing_owner_id,
            quantity=draft.quantity,
            start_date=draft.start_date,
            end_date=draft.end_date,
            status=BookingStatus.REQUESTED,
        )
        self.db.add(db_booking)
        # Flush to get the ID for the event payload
        self.db.flush()
        self._record_event(db_booking, "BOOKING_REQUESTED", BookingStatus.REQUESTED)

        if commit:
            self.db.commit()
            self.db.refresh(db_booking)
        return db_booking

    def transition(self, booking_id: int, new_status: BookingStatus) -> models.Booking:
        booking = self.get_or_raise(booking_id)
        current = booking.status
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Booking {booking_id} cannot move from {current.value} to {new_status.value}."
            )

        # Compare-and-swap on the observed status
        result = self.db.execute(
            update(models.Booking)
            .where(models.Booking.id == booking_id, models.Booking.status == current)
            .values(status=new_status, updated_at=models.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidTransitionError(
                f"Booking {booking_id} was changed by another request; it is no longer {current.value}."
            )

        self._record_event(booking, f"BOOKING_{new_status.name}", new_status)
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"Booking {booking_id} moved from {current.value} to {new_status.value}.")
        return booking

    def delete_history(self, booking_id: int, renter_id: int, is_admin: bool = False) -> None:
        """
        Permanently removes a terminal booking. The only destructive operation
        on the ledger; only the renter who owns the booking or an admin may call it.
        """
        booking = self.get_or_raise(booking_id)
        if booking.renter_id != renter_id and not is_admin:
            raise ForbiddenError("You can only delete your own booking history.")
        if booking.status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Booking {booking_id} is {booking.status.value}; only completed or cancelled bookings can be deleted."
            )

        self._record_event(booking, "BOOKING_HISTORY_DELETED", booking.status)
        self.db.expunge(booking)
        result = self.db.execute(
            delete(models.Booking)
            .where(models.Booking.id == booking_id, models.Booking.status.in_(list(TERMINAL_STATUSES)))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NotFoundError(f"Booking {booking_id} not found.")
        self.db.commit()
        logger.info(
            f"AUDIT booking history deleted: booking={booking_id} renter={booking.renter_id} "
            f"by user={renter_id} admin={is_admin}"
        )

    def lock_listing(self, listing_id: int) -> None:
        """
        Takes the listing's row lock for the rest of the current transaction.
        Databases without row locks (SQLite) ignore FOR UPDATE. Losing the race
        to create the lock row raises ConcurrencyConflictError; the caller rolls back.
        """
        stmt = select(models.ListingLock).where(
            models.ListingLock.listing_id == listing_id
        ).with_for_update()
        lock = self.db.execute(stmt).scalar_one_or_none()
        if lock is None:
            self.db.add(models.ListingLock(listing_id=listing_id))
            try:
                self.db.flush()
            except IntegrityError as e:
                # Another transaction created the lock row first
                raise ConcurrencyConflictError(f"Lock for listing {listing_id} was created concurrently.") from e

    # --- Reads ---

    def get(self, booking_id: int) -> Optional[models.Booking]:
        return self.db.query(models.Booking).filter(models.Booking.id == booking_id).first()

    def get_or_raise(self, booking_id: int) -> models.Booking:
        booking = self.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found.")
        return booking

    def scan(
            self,
            renter_id: Optional[int] = None,
            listing_id: Optional[int] = None,
            listing_owner_id: Optional[int] = None,
            statuses: Optional[Iterable[BookingStatus]] = None,
            ending_on_or_after: Optional[datetime.date] = None,
            skip: int = 0,
            limit: int = 100,
    ) -> list[models.Booking]:
        query = self._filtered(renter_id, listing_id, listing_owner_id, statuses, ending_on_or_after)
        return query.order_by(
            models.Booking.created_at.desc(), models.Booking.id.desc()
        ).offset(skip).limit(limit).all()

    def count(
            self,
            renter_id: Optional[int] = None,
            listing_id: Optional[int] = None,
            listing_owner_id: Optional[int] = None,
            statuses: Optional[Iterable[BookingStatus]] = None,
            ending_on_or_after: Optional[datetime.date] = None,
    ) -> int:
        return self._filtered(renter_id, listing_id, listing_owner_id, statuses, ending_on_or_after).count()

    def overlapping_quantity(
            self,
            listing_id: int,
            start_date: datetime.date,
            end_date: datetime.date,
            today: Optional[datetime.date] = None,
            exclude_booking_id: Optional[int] = None,
    ) -> int:
        """
        Sums the quantity of every live booking on the listing that touches
        [start_date, end_date]. Both ends are inclusive, so a booking ending on
        the day another starts counts as overlapping. Bookings that ended
        before today no longer hold anything, swept or not.
        """
        today = today or datetime.date.today()
        query = self.db.query(func.coalesce(func.sum(models.Booking.quantity), 0)).filter(
            models.Booking.listing_id == listing_id,
            models.Booking.status.in_(NON_TERMINAL_STATUSES),
            models.Booking.start_date <= end_date,
            models.Booking.end_date >= start_date,
            models.Booking.end_date >= today,
        )
        if exclude_booking_id is not None:
            query = query.filter(models.Booking.id != exclude_booking_id)
        return int(query.scalar())

    # --- Candidates for the lifecycle sweep ---

    def due_for_activation(self, today: datetime.date) -> list[models.Booking]:
        return self.db.query(models.Booking).filter(
            models.Booking.status == BookingStatus.REQUESTED,
            models.Booking.start_date <= today,
        ).order_by(models.Booking.id).all()

    def due_for_completion(self, today: datetime.date) -> list[models.Booking]:
        return self.db.query(models.Booking).filter(
            models.Booking.status == BookingStatus.ACTIVE,
            models.Booking.end_date < today,
        ).order_by(models.Booking.id).all()

    # --- Internals ---

    def _filtered(self, renter_id, listing_id, listing_owner_id, statuses, ending_on_or_after=None):
        query = self.db.query(models.Booking)
        if renter_id is not None:
            query = query.filter(models.Booking.renter_id == renter_id)
        if listing_id is not None:
            query = query.filter(models.Booking.listing_id == listing_id)
        if listing_owner_id is not None:
            query = query.filter(models.Booking.listing_owner_id == listing_owner_id)
        if statuses is not None:
            query = query.filter(models.Booking.status.in_(list(statuses)))
        if ending_on_or_after is not None:
            query = query.filter(models.Booking.end_date >= ending_on_or_after)
        return query

    def _record_event(self, booking: models.Booking, event_type: str, status: BookingStatus) -> None:
        """
        Adds an outbox event to the session. Does NOT commit; it rides along
        with the ledger change that caused it.
        """
        payload = {
            "event": event_type,
            "booking_id": booking.id,
            "listing_id": booking.listing_id,
            "renter_id": booking.renter_id,
            "quantity": booking.quantity,
            "start_date": booking.start_date.isoformat(),
            "end_date": booking.end_date.isoformat(),
            "status": status.value,
        }
        self.db.add(models.OutboxEvent(
            topic=settings.KAFKA_BOOKING_TOPIC,
            payload=json.dumps(payload),
            status="PENDING",
        ))
