import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .models import BookingStatus, TERMINAL_STATUSES


class UserRole(str, Enum):
    RENTER = "renter"
    ADMIN = "admin"


class Caller(BaseModel):
    """The authenticated user behind a request."""
    id: int
    role: UserRole = UserRole.RENTER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# --- Collaborator payloads ---

class Listing(BaseModel):
    id: int
    owner_id: int
    total_quantity: int = Field(ge=1)
    daily_rate: float = Field(default=0, ge=0)
    weekly_rate: float = Field(default=0, ge=0)
    monthly_rate: float = Field(default=0, ge=0)
    # Advisory only; it never reserves or releases units
    is_available: bool = True


class UserProfile(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    role: Optional[str] = None


# --- Bookings ---

class BookingCreate(BaseModel):
    # renter_id comes from the JWT token.
    # Ranges are checked by the lifecycle manager so that API and
    # direct callers get the same ValidationError.
    listing_id: int
    quantity: int = 1
    start_date: datetime.date
    end_date: datetime.date


class BookingRead(BaseModel):
    id: int
    listing_id: int
    renter_id: int
    listing_owner_id: Optional[int] = None
    quantity: int
    start_date: datetime.date
    end_date: datetime.date
    status: BookingStatus
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def is_history(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.end_date < datetime.date.today()


class BookingPage(BaseModel):
    items: List[BookingRead]
    total: int
    skip: int
    limit: int


class BookingRequestRead(BookingRead):
    renter: Optional[UserProfile] = None


class Availability(BaseModel):
    listing_id: int
    start_date: datetime.date
    end_date: datetime.date
    total_quantity: int
    reserved_quantity: int
    free_quantity: int


class ErrorResponse(BaseModel):
    detail: str
    code: str
