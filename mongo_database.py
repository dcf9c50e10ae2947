"""
MongoDB connection and collection helpers.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from config import Settings
from errors import ValidationFailed

logger = logging.getLogger(__name__)

CARS = "cars"
BOOKINGS = "bookings"
USERS = "users"

INDEX_ATTEMPTS = 3
INDEX_RETRY_DELAY = 2.0

_client: Optional[AsyncIOMotorClient] = None


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the way MongoDB hands dates back)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_client(settings: Settings) -> AsyncIOMotorClient:
    """
    Get a singleton MongoDB client instance.
    """
    global _client
    if _client is None:
        logger.info("Connecting to MongoDB...")
        _client = AsyncIOMotorClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000)
        logger.info("MongoDB client created")
    return _client


def get_database(settings: Settings) -> AsyncIOMotorDatabase:
    """
    Get the application database.
    """
    client = get_client(settings)
    return client[settings.mongodb_db]


async def ensure_indexes(db) -> None:
    """
    Create the indexes the booking flow relies on.

    The unique index on booking_id is what guarantees identifier uniqueness;
    the sparse unique indexes on the Razorpay ids keep one payment (and one
    order) from backing more than one booking.
    """
    await db[BOOKINGS].create_index("booking_id", unique=True)
    await db[BOOKINGS].create_index("razorpay_order_id", unique=True, sparse=True)
    await db[BOOKINGS].create_index("razorpay_payment_id", unique=True, sparse=True)
    await db[BOOKINGS].create_index([("car_id", ASCENDING), ("status", ASCENDING), ("start_date", ASCENDING)])
    await db[BOOKINGS].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db[CARS].create_index([("brand", ASCENDING), ("fuel_type", ASCENDING), ("price_per_day", ASCENDING)])
    logger.info("MongoDB indexes ensured")


def close_client():
    """
    Close the MongoDB client.
    """
    global _client
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
        _client = None


def to_object_id(value: str, label: str = "car") -> ObjectId:
    """
    Convert a path/body id to an ObjectId.

    Raises:
        ValidationFailed: if the value is not a valid ObjectId
    """
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(value):
        raise ValidationFailed(
            [{"field": f"{label}_id", "message": f"Invalid {label} ID"}],
            message=f"Invalid {label} ID",
        )
    return ObjectId(value)


async def ensure_indexes_with_retry(
    db,
    attempts: int = INDEX_ATTEMPTS,
    delay: float = INDEX_RETRY_DELAY,
) -> None:
    """
    Create the indexes, retrying transient failures.

    Raises:
        PyMongoError: the last failure, once every attempt has failed
    """
    for attempt in range(1, attempts + 1):
        try:
            await ensure_indexes(db)
            return
        except PyMongoError as e:
            if attempt == attempts:
                logger.error(f"❌ Could not create MongoDB indexes after {attempts} attempts: {str(e)}")
                raise
            logger.warning(f"⚠️  Index creation failed (attempt {attempt}/{attempts}): {str(e)}, retrying")
            await asyncio.sleep(delay)
