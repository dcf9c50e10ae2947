"""
Shared fixtures: an in-memory Motor database, an in-memory ledger, a mocked
Razorpay API and seed helpers for cars, users and bookings.
"""
import json
from dataclasses import replace
from datetime import date, datetime, timedelta

import httpx
import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from config import Settings
from database import close_db, create_ledger_engine, create_session_maker, init_db
from mongo_database import BOOKINGS, CARS, USERS, ensure_indexes, utc_now
from schemas import BookingRequest

TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "S"


@pytest.fixture
def settings():
    return Settings(
        mongodb_uri="mongodb://localhost:27017",
        mongodb_db="car_rental_test",
        database_url="sqlite+aiosqlite://",
        razorpay_key_id=TEST_KEY_ID,
        razorpay_key_secret=TEST_KEY_SECRET,
        razorpay_api_url="https://razorpay.test/v1",
        booking_lock_retries=20,
        booking_lock_retry_delay=0.01,
    )


@pytest.fixture
def fast_lease_settings(settings):
    return replace(settings, booking_lock_retries=2, booking_lock_retry_delay=0)


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["car_rental_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
async def ledger_sessions():
    engine = create_ledger_engine("sqlite+aiosqlite://")
    assert await init_db(engine)
    yield create_session_maker(engine)
    await close_db(engine)


class RazorpayStub:
    """Records order requests and answers like the Orders API."""

    def __init__(self):
        self.requests = []
        self.fail_with = None
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"description": "provider down"}})

        payload = json.loads(request.content)
        self._counter += 1
        return httpx.Response(200, json={
            "id": f"order_test_{self._counter}",
            "entity": "order",
            "amount": payload["amount"],
            "currency": payload["currency"],
            "receipt": payload["receipt"],
            "status": "created",
        })


@pytest.fixture
def razorpay():
    return RazorpayStub()


@pytest.fixture
async def http_client(razorpay):
    async with httpx.AsyncClient(transport=httpx.MockTransport(razorpay.handler)) as client:
        yield client


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

def car_document(**overrides) -> dict:
    now = utc_now()
    doc = {
        "title": "Hyundai Creta SX",
        "brand": "Hyundai",
        "model": "Creta",
        "year": 2022,
        "price_per_day": 2500.0,
        "price_per_hour": 300.0,
        "fuel_type": "Petrol",
        "transmission": "Automatic",
        "mileage": 16.8,
        "seats": 5,
        "image": "https://images.example.com/creta.jpg",
        "features": ["AC", "GPS"],
        "description": "Compact SUV",
        "is_available": True,
        "location": "Bengaluru",
        "rating": 4.5,
        "total_bookings": 0,
        "created_at": now,
        "updated_at": now,
    }
    doc.update(overrides)
    return doc


async def seed_car(db, **overrides) -> dict:
    doc = car_document(**overrides)
    result = await db[CARS].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


async def seed_user(db, role="user", **overrides) -> dict:
    doc = {
        "name": "Asha Rao" if role == "user" else "Fleet Admin",
        "email": f"{ObjectId()}@example.com",
        "phone": "9876543210",
        "role": role,
    }
    doc.update(overrides)
    result = await db[USERS].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


async def seed_booking(
    db,
    car_id,
    user_id,
    start: datetime,
    end: datetime,
    status="confirmed",
    total_amount=5000.0,
    created_at=None,
    booking_id=None,
) -> dict:
    doc = {
        "booking_id": booking_id or f"CG{ObjectId()}",
        "user_id": str(user_id),
        "car_id": car_id,
        "start_date": start,
        "end_date": end,
        "start_time": f"{start:%H:%M}",
        "end_time": f"{end:%H:%M}",
        "booking_type": "daily",
        "duration": max((end.date() - start.date()).days, 1),
        "total_amount": total_amount,
        "status": status,
        "payment_status": "paid",
        "razorpay_order_id": f"order_{ObjectId()}",
        "razorpay_payment_id": f"pay_{ObjectId()}",
        "pickup_location": "Airport",
        "dropoff_location": "Airport",
        "created_at": created_at or utc_now(),
        "updated_at": utc_now(),
    }
    result = await db[BOOKINGS].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def booking_request(car_id, start_date: date, end_date: date, start_time="10:00", end_time="10:00",
                    booking_type="daily") -> BookingRequest:
    return BookingRequest(
        car_id=str(car_id),
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        booking_type=booking_type,
        pickup_location="Airport",
        dropoff_location="City Centre",
    )


def days_from_today(days: int) -> date:
    return utc_now().date() + timedelta(days=days)
