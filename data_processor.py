"""
Data processing functions for shaping stored documents into API responses.
"""
import math
from datetime import datetime
from typing import Iterable, Optional

from schemas import Booking, Car

# Display fields copied onto bookings in listings
CAR_LIST_FIELDS = ("title", "brand", "model", "image", "location")
CAR_DETAIL_FIELDS = ("title", "brand", "model", "image", "location", "price_per_day", "price_per_hour")
CAR_SUMMARY_FIELDS = ("title", "brand", "model")
USER_DETAIL_FIELDS = ("name", "email", "phone")
USER_SUMMARY_FIELDS = ("name", "email")


def pick_fields(doc: Optional[dict], fields: Iterable[str]) -> Optional[dict]:
    """
    Filter a document to include only the specified fields.
    Returns a dictionary with "id" plus each field (None if missing).
    """
    if not doc:
        return None

    picked = {"id": str(doc["_id"]) if doc.get("_id") is not None else None}
    for field in fields:
        value = doc.get(field)
        if isinstance(value, datetime):
            value = value.isoformat()
        picked[field] = value
    return picked


def serialize_car(doc: dict) -> dict:
    """Shape a car document for the API (lease bookkeeping is dropped)."""
    return Car.from_document(doc).model_dump(mode="json")


def serialize_booking(doc: dict, car: Optional[dict] = None, user: Optional[dict] = None) -> dict:
    """
    Shape a booking document for the API.

    When car/user summaries are given they replace the bare ids under
    "car" and "user", the same way listings show them.
    """
    data = Booking.from_document(doc).model_dump(mode="json")
    if car is not None:
        data["car"] = car
    if user is not None:
        data["user"] = user
    return data


def build_pagination(page: int, limit: int, total: int, returned: int, total_key: str) -> dict:
    """
    Pagination metadata for list responses.

    Args:
        page: current page (1-based)
        limit: page size
        total: number of matching documents
        returned: number of documents on this page
        total_key: name of the total field, e.g. "total_cars"
    """
    skip = (page - 1) * limit
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if limit else 0,
        total_key: total,
        "has_next": skip + returned < total,
        "has_prev": page > 1,
    }
