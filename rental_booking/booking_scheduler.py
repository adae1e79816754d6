import asyncio
import datetime
import logging

from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .lifecycle import BookingLifecycleManager

logger = logging.getLogger("booking_service")


def advance_bookings(db: Session, today: datetime.date = None) -> tuple[int, int]:
    """
    Activates bookings whose window has begun and completes those that ended
    before today. Availability never waits on this sweep: bookings that are
    already over are left out of capacity sums regardless of their stored status.
    """
    today = today or datetime.date.today()
    logger.info(f"Advancing booking lifecycle for {today}...")

    # The sweep never creates bookings, so it needs no listing store
    manager = BookingLifecycleManager(db, listing_store=None)
    activated, completed = manager.advance(today)

    if activated or completed:
        logger.info(f"Activated {activated} and completed {completed} bookings.")
    else:
        logger.info("No bookings changed status.")
    return activated, completed


async def run_booking_scheduler(poll_interval: int = None):
    """
    Main background loop for the scheduler.
    """
    if poll_interval is None:
        poll_interval = settings.SCHEDULER_POLL_INTERVAL_SECONDS
    while True:
        db: Session = SessionLocal()
        try:
            # The sweep is blocking DB work; keep it off the event loop
            await asyncio.to_thread(advance_bookings, db)
        except Exception as e:
            logger.exception(f"Error in booking scheduler loop: {e}")
            db.rollback()
        finally:
            db.close()

        await asyncio.sleep(poll_interval)
