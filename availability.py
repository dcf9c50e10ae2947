"""
Availability checks: does a car have a conflicting booking for an interval?
"""
import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId

from mongo_database import BOOKINGS, CARS
from schemas import ACTIVE_BOOKING_STATUSES

logger = logging.getLogger(__name__)


def overlap_filter(start: datetime, end: datetime) -> dict:
    """
    Query fragment matching active bookings that overlap [start, end].

    Boundaries are inclusive: a booking ending exactly when the requested
    interval starts is a conflict.
    """
    return {
        "status": {"$in": ACTIVE_BOOKING_STATUSES},
        "start_date": {"$lte": end},
        "end_date": {"$gte": start},
    }


async def find_overlapping_booking(
    db,
    car_id: ObjectId,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[ObjectId] = None,
) -> Optional[dict]:
    """Return one active booking of the car overlapping [start, end], if any."""
    query = {"car_id": car_id, **overlap_filter(start, end)}
    if exclude_booking_id is not None:
        query["_id"] = {"$ne": exclude_booking_id}
    return await db[BOOKINGS].find_one(query)


async def is_car_available(
    db,
    car_id: ObjectId,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[ObjectId] = None,
    car: Optional[dict] = None,
) -> bool:
    """
    Check whether a car can be booked for [start, end].

    A car is unavailable when its own is_available flag is off (or it does
    not exist) or when any confirmed/pending booking overlaps the interval.

    Args:
        db: application database
        car_id: car to check
        start: requested start instant
        end: requested end instant
        exclude_booking_id: booking to ignore (when re-checking an existing one)
        car: already loaded car document, to skip a lookup

    Returns:
        True if the car is free for the whole interval
    """
    if car is None:
        car = await db[CARS].find_one({"_id": car_id})
    if not car or not car.get("is_available", True):
        return False

    overlapping = await find_overlapping_booking(db, car_id, start, end, exclude_booking_id)
    if overlapping:
        logger.info(
            f"Car {car_id} unavailable for {start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}: "
            f"overlaps booking {overlapping.get('booking_id')}"
        )
        return False
    return True
