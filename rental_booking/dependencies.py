from fastapi import Depends
from redis import Redis
from sqlalchemy.orm import Session

from .clients import IdentityService, ListingStore
from .database import get_db, get_redis_client
from .lifecycle import BookingLifecycleManager
from .queries import BookingQueries


def get_listing_store():
    store = ListingStore()
    try:
        yield store
    finally:
        store.close()


def get_identity_service(redis_client: Redis = Depends(get_redis_client)):
    identity = IdentityService(redis_client=redis_client)
    try:
        yield identity
    finally:
        identity.close()


def get_lifecycle_manager(
        db: Session = Depends(get_db),
        listing_store: ListingStore = Depends(get_listing_store),
) -> BookingLifecycleManager:
    return BookingLifecycleManager(db, listing_store)


def get_queries(db: Session = Depends(get_db)) -> BookingQueries:
    return BookingQueries(db)


def get_request_queries(
        db: Session = Depends(get_db),
        identity: IdentityService = Depends(get_identity_service),
) -> BookingQueries:
    return BookingQueries(db, identity=identity)
