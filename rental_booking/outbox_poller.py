import asyncio
import logging

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from sqlalchemy.orm import Session
from sqlalchemy.sql import select

from .config import settings
from .database import SessionLocal
from .models import OutboxEvent, utcnow

logger = logging.getLogger("outbox_poller")


async def connect_producer(retry_delay: int = 5, max_retries: int = 5) -> AIOKafkaProducer | None:
    """
    Starts a Kafka producer, retrying the initial connection.
    Returns None if Kafka stayed unreachable.
    """
    for attempt in range(1, max_retries + 1):
        producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
        try:
            await producer.start()
            logger.info(f"Outbox poller connected to Kafka on attempt {attempt}.")
            return producer
        except KafkaConnectionError as e:
            await producer.stop()
            logger.warning(f"Kafka connection attempt {attempt}/{max_retries} failed: {e}.")
            if attempt < max_retries:
                await asyncio.sleep(retry_delay)

    logger.error("Outbox poller failed to connect to Kafka after multiple retries.")
    return None


async def publish_pending_events(db: Session, producer: AIOKafkaProducer, batch_size: int = 100) -> int:
    """
    Sends up to `batch_size` pending events in creation order and marks the
    delivered ones SENT. Failed sends stay PENDING for the next round.
    """
    stmt = select(OutboxEvent).where(
        OutboxEvent.status == "PENDING"
    ).order_by(OutboxEvent.id).limit(batch_size).with_for_update(skip_locked=True)
    pending_events = db.execute(stmt).scalars().all()
    if not pending_events:
        return 0

    logger.info(f"Found {len(pending_events)} pending events in outbox.")
    sent = 0
    for event in pending_events:
        try:
            await producer.send_and_wait(topic=event.topic, value=event.payload.encode("utf-8"))
        except Exception as e:
            logger.error(f"Failed to send event {event.id} to Kafka: {e}")
            continue
        event.status = "SENT"
        event.sent_at = utcnow()
        sent += 1

    db.commit()
    if sent:
        logger.info(f"Published {sent} outbox events.")
    return sent


async def run_outbox_poller(poll_interval: int = None, retry_delay: int = 5, max_retries: int = 5):
    """
    Continuously relays booking events from the outbox table to Kafka.
    """
    if poll_interval is None:
        poll_interval = settings.OUTBOX_POLL_INTERVAL_SECONDS
    logger.info("Starting outbox poller...")

    producer = await connect_producer(retry_delay=retry_delay, max_retries=max_retries)
    if producer is None:
        return

    try:
        while True:
            db: Session = SessionLocal()
            try:
                await publish_pending_events(db, producer)
            except Exception as e:
                logger.exception(f"Error in poller loop: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
        raise
    finally:
        logger.info("Stopping Kafka producer...")
        await producer.stop()
        logger.info("Outbox poller shut down.")
