import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
)

from .database import Base


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# --- ENUM for the booking lifecycle ---
class BookingStatus(PyEnum):
    REQUESTED = "requested"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Statuses that hold inventory for availability purposes
NON_TERMINAL_STATUSES = (BookingStatus.REQUESTED, BookingStatus.ACTIVE)

ALLOWED_TRANSITIONS = {
    BookingStatus.REQUESTED: frozenset({BookingStatus.ACTIVE, BookingStatus.CANCELLED}),
    BookingStatus.ACTIVE: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    # IDs owned by the catalog and identity services.
    # No direct DB relationship is enforced.
    listing_id = Column(Integer, index=True, nullable=False)
    renter_id = Column(Integer, index=True, nullable=False)
    # Snapshot of the listing owner at booking time, for the owner dashboard
    listing_owner_id = Column(Integer, index=True, nullable=True)

    quantity = Column(Integer, nullable=False)

    # Inclusive on both ends
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.REQUESTED, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_booking_quantity_positive"),
        CheckConstraint("start_date <= end_date", name="check_booking_date_range"),
        Index("ix_bookings_listing_status", "listing_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, listing={self.listing_id}, renter={self.renter_id}, "
            f"quantity={self.quantity}, status={self.status})>"
        )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # PENDING until the poller has handed it to Kafka
    status = Column(String(20), default="PENDING", nullable=False)

    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)
    sent_at = Column(TIMESTAMP, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )


class ListingLock(Base):
    """
    One row per listing. Reservations lock it FOR UPDATE so that only one
    check-then-create runs per listing at a time, across processes.
    """
    __tablename__ = "listing_locks"

    listing_id = Column(Integer, primary_key=True, autoincrement=False)
    created_at = Column(TIMESTAMP, default=utcnow)
