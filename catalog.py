"""
Car catalog: filtered/paginated listings, single-car reads and the admin
create/update/delete operations.
"""
import logging
import re
from datetime import datetime
from typing import List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from availability import overlap_filter
from data_processor import build_pagination, serialize_car
from errors import BusinessRuleViolation, NotFoundError, ValidationFailed
from mongo_database import BOOKINGS, CARS, to_object_id, utc_now
from schemas import ACTIVE_BOOKING_STATUSES, CarCreate, CarUpdate

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
PUBLIC_PAGE_SIZE = 12
ADMIN_PAGE_SIZE = 10

SORT_FIELDS = (
    "created_at",
    "updated_at",
    "price_per_day",
    "price_per_hour",
    "year",
    "rating",
    "total_bookings",
    "title",
    "brand",
)


def _contains(text: str) -> dict:
    """Case-insensitive substring match."""
    return {"$regex": re.escape(text), "$options": "i"}


def build_car_filter(
    search: Optional[str] = None,
    brand: Optional[str] = None,
    fuel_type: Optional[str] = None,
    transmission: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    public: bool = True,
    is_available: Optional[bool] = None,
) -> dict:
    """
    Build the MongoDB filter for a car listing.

    Public listings only ever show cars flagged available; admin listings
    drop that constraint and honour an explicit is_available filter instead.
    """
    filt: dict = {}

    if public:
        filt["is_available"] = True
    elif is_available is not None:
        filt["is_available"] = is_available

    if search:
        filt["$or"] = [
            {"title": _contains(search)},
            {"brand": _contains(search)},
            {"model": _contains(search)},
        ]
    if brand:
        filt["brand"] = _contains(brand)
    if fuel_type:
        filt["fuel_type"] = fuel_type
    if transmission:
        filt["transmission"] = transmission

    if min_price is not None or max_price is not None:
        price_cond: dict = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        filt["price_per_day"] = price_cond

    return filt


def build_sort(sort_by: str = "created_at", sort_order: str = "desc") -> list:
    if sort_by not in SORT_FIELDS:
        raise ValidationFailed([{"field": "sort_by", "message": f"Cannot sort by '{sort_by}'"}])
    if sort_order not in ("asc", "desc"):
        raise ValidationFailed([{"field": "sort_order", "message": "Sort order must be asc or desc"}])

    direction = ASCENDING if sort_order == "asc" else DESCENDING
    return [(sort_by, direction), ("_id", direction)]


async def booked_car_ids(db, start: datetime, end: datetime) -> list:
    """Ids of cars holding a confirmed/pending booking that overlaps [start, end]."""
    return await db[BOOKINGS].distinct("car_id", overlap_filter(start, end))


async def _page_of_cars(db, filt: dict, sort: list, page: int, limit: int) -> dict:
    skip = (page - 1) * limit
    cursor = db[CARS].find(filt).sort(sort).skip(skip).limit(limit)
    docs = await cursor.to_list(length=None)
    total = await db[CARS].count_documents(filt)

    cars = [serialize_car(doc) for doc in docs]
    return {
        "cars": cars,
        "pagination": build_pagination(page, limit, total, len(cars), "total_cars"),
    }


async def list_cars(
    db,
    page: int = 1,
    limit: int = PUBLIC_PAGE_SIZE,
    search: Optional[str] = None,
    brand: Optional[str] = None,
    fuel_type: Optional[str] = None,
    transmission: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """
    Public car listing.

    When both start_date and end_date are given, cars with an overlapping
    confirmed/pending booking are excluded: the conflicting car ids are
    resolved first, then left out of the car query.
    """
    filt = build_car_filter(search, brand, fuel_type, transmission, min_price, max_price, public=True)
    sort = build_sort(sort_by, sort_order)

    if start_date and end_date:
        if end_date < start_date:
            raise ValidationFailed([{"field": "end_date", "message": "End date must not be before start date"}])
        excluded = await booked_car_ids(db, start_date, end_date)
        filt["_id"] = {"$nin": excluded}
        logger.info(f"Excluding {len(excluded)} booked cars for {start_date:%Y-%m-%d} - {end_date:%Y-%m-%d}")

    return await _page_of_cars(db, filt, sort, page, limit)


async def list_admin_cars(
    db,
    page: int = 1,
    limit: int = ADMIN_PAGE_SIZE,
    search: Optional[str] = None,
    is_available: Optional[bool] = None,
) -> dict:
    filt = build_car_filter(search=search, public=False, is_available=is_available)
    return await _page_of_cars(db, filt, build_sort(), page, limit)


async def get_car(db, car_id: str) -> dict:
    doc = await db[CARS].find_one({"_id": to_object_id(car_id)})
    if not doc:
        raise NotFoundError("Car not found")
    return doc


async def list_brands(db) -> List[str]:
    """Distinct brands among available cars, sorted."""
    brands = await db[CARS].distinct("brand", {"is_available": True})
    return sorted(brands)


async def create_car(db, car: CarCreate) -> dict:
    now = utc_now()
    doc = car.model_dump(mode="json")
    doc.update({"total_bookings": 0, "created_at": now, "updated_at": now})

    result = await db[CARS].insert_one(doc)
    doc["_id"] = result.inserted_id
    logger.info(f"[CAR ADDED] {doc['_id']} | {doc['year']} {doc['brand']} {doc['model']}")
    return doc


async def update_car(db, car_id: str, changes: CarUpdate) -> dict:
    oid = to_object_id(car_id)
    update = changes.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    update["updated_at"] = utc_now()

    doc = await db[CARS].find_one_and_update(
        {"_id": oid},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Car not found")

    logger.info(f"[CAR UPDATED] {oid} | fields: {', '.join(sorted(update))}")
    return doc


async def delete_car(db, car_id: str) -> None:
    """Delete a car unless a confirmed/pending booking still references it."""
    oid = to_object_id(car_id)

    active = await db[BOOKINGS].count_documents({
        "car_id": oid,
        "status": {"$in": ACTIVE_BOOKING_STATUSES},
    })
    if active > 0:
        raise BusinessRuleViolation("Cannot delete car with active bookings")

    result = await db[CARS].delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise NotFoundError("Car not found")
    logger.info(f"[CAR DELETED] {oid}")
