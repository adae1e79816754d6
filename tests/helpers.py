from datetime import date, timedelta

import httpx
from jose import jwt

from rental_booking import schemas
from rental_booking.config import settings
from rental_booking.exceptions import ListingNotFoundError

LISTINGS = {
    1: {"id": 1, "owner_id": 50, "total_quantity": 2, "daily_rate": 40.0, "weekly_rate": 200.0},
    2: {"id": 2, "owner_id": 50, "total_quantity": 5, "daily_rate": 15.0},
    3: {"id": 3, "owner_id": 60, "total_quantity": 1, "daily_rate": 90.0, "is_available": False},
}

USERS = {
    1: {"id": 1, "username": "renter_one", "email": "one@example.com", "role": "renter"},
    2: {"id": 2, "username": "renter_two", "email": "two@example.com", "role": "renter"},
}


def day(offset: int) -> date:
    """A date relative to today, so bookings are never in the past."""
    return date.today() + timedelta(days=offset)


def create_test_token(user_id: int = 1, role: str = "renter") -> str:
    payload = {"sub": str(user_id), "role": role}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


class StaticListingStore:
    """In-memory stand-in for the catalog service."""

    def __init__(self, listings=None):
        self.listings = {
            listing_id: schemas.Listing(**data) for listing_id, data in (listings or LISTINGS).items()
        }

    def get_listing(self, listing_id: int) -> schemas.Listing:
        try:
            return self.listings[listing_id]
        except KeyError:
            raise ListingNotFoundError(f"Listing {listing_id} not found.")


def catalog_handler(request: httpx.Request) -> httpx.Response:
    listing_id = int(request.url.path.rsplit("/", 1)[-1])
    if listing_id not in LISTINGS:
        return httpx.Response(404, json={"detail": "Listing not found"})
    return httpx.Response(200, json=LISTINGS[listing_id])


def identity_handler(request: httpx.Request) -> httpx.Response:
    user_id = int(request.url.path.rsplit("/", 1)[-1])
    if user_id not in USERS:
        return httpx.Response(404, json={"detail": "User not found"})
    return httpx.Response(200, json=USERS[user_id])
