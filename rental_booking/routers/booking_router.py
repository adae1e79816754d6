import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi_limiter.depends import RateLimiter

from .. import schemas
from ..auth import ensure_self_or_admin, get_current_admin, get_current_caller, get_key_by_user_id_or_ip
from ..dependencies import get_lifecycle_manager, get_queries, get_request_queries
from ..exceptions import ForbiddenError, ValidationError
from ..lifecycle import BookingLifecycleManager
from ..models import BookingStatus
from ..queries import BookingQueries

router = APIRouter(prefix="/bookings", tags=["Bookings"])

# Module-level so tests can override them by identity
write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=120, minutes=1, identifier=get_key_by_user_id_or_ip)

CallerDep = Annotated[schemas.Caller, Depends(get_current_caller)]
AdminDep = Annotated[schemas.Caller, Depends(get_current_admin)]
ManagerDep = Annotated[BookingLifecycleManager, Depends(get_lifecycle_manager)]
QueriesDep = Annotated[BookingQueries, Depends(get_queries)]
Skip = Annotated[int, Query(ge=0)]
Limit = Annotated[int, Query(ge=1, le=100)]


@router.post(
    "/",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(write_limiter)],
)
def book_package(booking: schemas.BookingCreate, caller: CallerDep, manager: ManagerDep):
    """
    Reserve equipment for the authenticated user.
    """
    return manager.book_package(
        renter_id=caller.id,
        listing_id=booking.listing_id,
        quantity=booking.quantity,
        start_date=booking.start_date,
        end_date=booking.end_date,
    )


@router.get("/", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_my_bookings(caller: CallerDep, queries: QueriesDep, skip: Skip = 0, limit: Limit = 100):
    """
    Get all bookings for the authenticated user.
    """
    return queries.user_bookings(caller.id, skip=skip, limit=limit)


@router.get("/current", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def get_current_bookings(
        admin: AdminDep,
        queries: QueriesDep,
        user_id: Optional[int] = None,
        skip: Skip = 0,
        limit: Limit = 100,
):
    """
    Requested and active bookings, optionally for a single user. Admin only.
    """
    return queries.current_bookings(user_id=user_id, skip=skip, limit=limit)


@router.get("/all", response_model=schemas.BookingPage, dependencies=[Depends(read_limiter)])
def get_all_bookings(admin: AdminDep, queries: QueriesDep, skip: Skip = 0, limit: Limit = 100):
    items, total = queries.all_bookings(skip=skip, limit=limit)
    return schemas.BookingPage(
        items=[schemas.BookingRead.model_validate(b) for b in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/availability/{listing_id}",
    response_model=schemas.Availability,
    dependencies=[Depends(read_limiter)],
)
def get_availability(
        listing_id: int,
        start_date: datetime.date,
        end_date: datetime.date,
        caller: CallerDep,
        manager: ManagerDep,
):
    if start_date > end_date:
        raise ValidationError("Booking end date must not be before start date.")
    listing = manager.listings.get_listing(listing_id)
    reserved = manager.availability.reserved_units(listing_id, start_date, end_date)
    return schemas.Availability(
        listing_id=listing_id,
        start_date=start_date,
        end_date=end_date,
        total_quantity=listing.total_quantity,
        reserved_quantity=reserved,
        free_quantity=max(listing.total_quantity - reserved, 0),
    )


@router.get(
    "/requests/{owner_id}",
    response_model=List[schemas.BookingRequestRead],
    dependencies=[Depends(read_limiter)],
)
def get_booking_requests(
        owner_id: int,
        caller: CallerDep,
        queries: Annotated[BookingQueries, Depends(get_request_queries)],
        status_filter: Annotated[Optional[List[BookingStatus]], Query(alias="status")] = None,
        skip: Skip = 0,
        limit: Limit = 100,
):
    """
    Bookings on an owner's listings along with the renter who asked for them.
    Visible to admins and to the owner themself.
    """
    if caller.id != owner_id and not caller.is_admin:
        raise ForbiddenError("Only the listing owner or an admin can see these requests.")
    return queries.booking_requests(owner_id, statuses=status_filter, skip=skip, limit=limit)


@router.get(
    "/users/{user_id}/current",
    response_model=List[schemas.BookingRead],
    dependencies=[Depends(read_limiter)],
)
def get_user_current_bookings(user_id: int, caller: CallerDep, queries: QueriesDep, skip: Skip = 0, limit: Limit = 100):
    ensure_self_or_admin(caller, user_id)
    return queries.user_current_bookings(user_id, skip=skip, limit=limit)


@router.get("/users/{user_id}", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def get_all_user_bookings(user_id: int, caller: CallerDep, queries: QueriesDep, skip: Skip = 0, limit: Limit = 100):
    ensure_self_or_admin(caller, user_id)
    return queries.user_bookings(user_id, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=schemas.BookingRead, dependencies=[Depends(read_limiter)])
def read_booking(booking_id: int, caller: CallerDep, queries: QueriesDep):
    booking = queries.ledger.get_or_raise(booking_id)
    if booking.renter_id != caller.id and not caller.is_admin:
        raise ForbiddenError("You can only view your own bookings.")
    return booking


@router.post(
    "/{booking_id}/cancel",
    response_model=schemas.BookingRead,
    dependencies=[Depends(write_limiter)],
)
def cancel_booking(booking_id: int, caller: CallerDep, manager: ManagerDep):
    return manager.cancel_booking(booking_id, caller)


@router.delete(
    "/{booking_id}/history",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(write_limiter)],
)
def delete_booking_history(booking_id: int, caller: CallerDep, manager: ManagerDep):
    manager.delete_booking_history(booking_id, caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
