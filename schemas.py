"""
Database Schemas for the Car Rental Platform

Request bodies are validated by the *Create/*Request models. Stored documents
are read back into the fixed-shape record models (Car, Booking, Identity);
optional fields stay absent until the booking flow fills them in.
"""
from datetime import date, datetime, timezone
from typing import Annotated, List, Literal, Optional

from bson import ObjectId
from pydantic import (
    AfterValidator,
    AnyHttpUrl,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

FuelType = Literal["Petrol", "Diesel", "Electric", "Hybrid", "CNG"]
Transmission = Literal["Manual", "Automatic"]
BookingType = Literal["hourly", "daily"]
BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
Role = Literal["user", "admin"]

# Bookings in these states hold the car
ACTIVE_BOOKING_STATUSES = ["confirmed", "pending"]

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"
MIN_CAR_YEAR = 1990


def max_car_year() -> int:
    return datetime.now(timezone.utc).year + 1


def parse_instant(value):
    """
    Parse an ISO-8601 date or datetime into a naive UTC datetime.

    "2024-01-01" becomes midnight; aware values are converted to UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("must be a valid ISO 8601 date")
    else:
        raise ValueError("must be a valid ISO 8601 date")

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


Instant = Annotated[datetime, BeforeValidator(parse_instant)]


def _check_object_id(value: str, label: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError(f"Invalid {label} ID")
    return value


def _check_year(value: Optional[int]) -> Optional[int]:
    if value is not None and value > max_car_year():
        raise ValueError("Year cannot be in the future")
    return value


CarYear = Annotated[int, Field(ge=MIN_CAR_YEAR), AfterValidator(_check_year)]


# ---------------------------------------------------------------------------
# Cars
# ---------------------------------------------------------------------------

class CarCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=100, description="Display name")
    brand: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    year: CarYear = Field(..., description="Manufacturing year")
    price_per_day: float = Field(..., ge=0)
    price_per_hour: float = Field(..., ge=0)
    fuel_type: FuelType
    transmission: Transmission
    mileage: float = Field(..., ge=0)
    seats: int = Field(..., ge=2, le=8)
    image: AnyHttpUrl
    features: List[str] = Field(default_factory=list)
    description: Optional[str] = Field(None, max_length=500)
    is_available: bool = True
    location: str = Field(..., min_length=1)
    rating: float = Field(0, ge=0, le=5)


class CarUpdate(BaseModel):
    """Partial update; only the fields sent are written."""
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    brand: Optional[str] = Field(None, min_length=1)
    model: Optional[str] = Field(None, min_length=1)
    year: Optional[CarYear] = None
    price_per_day: Optional[float] = Field(None, ge=0)
    price_per_hour: Optional[float] = Field(None, ge=0)
    fuel_type: Optional[FuelType] = None
    transmission: Optional[Transmission] = None
    mileage: Optional[float] = Field(None, ge=0)
    seats: Optional[int] = Field(None, ge=2, le=8)
    image: Optional[AnyHttpUrl] = None
    features: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=500)
    is_available: Optional[bool] = None
    location: Optional[str] = Field(None, min_length=1)
    rating: Optional[float] = Field(None, ge=0, le=5)


class Car(BaseModel):
    """A car document as stored in the `cars` collection."""
    id: str
    title: str
    brand: str
    model: str
    year: int
    price_per_day: float
    price_per_hour: float
    fuel_type: str
    transmission: str
    mileage: float = 0
    seats: int
    image: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    is_available: bool = True
    location: Optional[str] = None
    rating: float = 0
    total_bookings: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Car":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

class BookingRequest(BaseModel):
    """Booking form data, sent with order creation and again with verification."""
    model_config = ConfigDict(str_strip_whitespace=True)

    car_id: str
    start_date: date
    end_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN, description="HH:MM")
    end_time: str = Field(..., pattern=TIME_PATTERN, description="HH:MM")
    booking_type: BookingType
    pickup_location: str = Field(..., min_length=1)
    dropoff_location: str = Field(..., min_length=1)
    special_requests: Optional[str] = Field(None, max_length=200)

    @field_validator("car_id")
    @classmethod
    def car_id_is_object_id(cls, value: str) -> str:
        return _check_object_id(value, "car")


class PaymentVerificationRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    booking_details: BookingRequest


class AvailabilityRequest(BaseModel):
    start_date: Instant
    end_date: Instant

    @model_validator(mode="after")
    def end_not_before_start(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class Booking(BaseModel):
    """A booking document as stored in the `bookings` collection."""
    id: str
    booking_id: str
    user_id: str
    car_id: str
    start_date: datetime
    end_date: datetime
    start_time: str
    end_time: str
    booking_type: BookingType
    duration: int
    total_amount: float
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    pickup_location: str
    dropoff_location: str
    special_requests: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Booking":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        data["car_id"] = str(data["car_id"])
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Identity (owned by the authentication layer)
# ---------------------------------------------------------------------------

class Identity(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: Role = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_document(cls, doc: dict) -> "Identity":
        return cls(
            id=str(doc["_id"]),
            name=doc.get("name", ""),
            email=doc.get("email", ""),
            phone=doc.get("phone"),
            role=doc.get("role", "user"),
        )
