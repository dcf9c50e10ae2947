"""
Booking lifecycle: identifier assignment, pre-write validation, commit of a
paid booking, cancellation and administrative status changes.
"""
import asyncio
import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from availability import find_overlapping_booking
from config import Settings
from data_processor import (
    CAR_DETAIL_FIELDS,
    CAR_LIST_FIELDS,
    USER_DETAIL_FIELDS,
    build_pagination,
    pick_fields,
    serialize_booking,
)
from errors import (
    AuthorizationError,
    BusinessRuleViolation,
    DuplicatePaymentError,
    InfrastructureError,
    NotFoundError,
)
from mongo_database import BOOKINGS, CARS, USERS, to_object_id, utc_now
from pricing import booking_window, compute_booking_details
from schemas import BookingRequest, Car, Identity

logger = logging.getLogger(__name__)

BOOKING_ID_PREFIX = "CG"
BOOKING_ID_SUFFIX_LENGTH = 5
MAX_BOOKING_ID_ATTEMPTS = 5
_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_id() -> str:
    """Human-readable booking reference: prefix, epoch millis, random suffix."""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(BOOKING_ID_SUFFIX_LENGTH))
    return f"{BOOKING_ID_PREFIX}{millis}{suffix}"


def prepare_booking_for_write(doc: dict) -> dict:
    """
    Validation and initialization run before every booking write.

    Assigns the booking_id if (and only if) the document has none yet and
    enforces the interval ordering and amount invariants.

    Raises:
        BusinessRuleViolation: if start_date >= end_date or the amount is negative
    """
    if not doc.get("booking_id"):
        doc["booking_id"] = generate_booking_id()

    if doc["start_date"] >= doc["end_date"]:
        raise BusinessRuleViolation("End date must be after start date")

    if doc.get("total_amount", 0) < 0:
        raise BusinessRuleViolation("Amount cannot be negative")

    doc["updated_at"] = utc_now()
    return doc


async def reject_reused_payment(db, doc: dict) -> None:
    """
    Raise DuplicatePaymentError if a booking already carries the document's
    Razorpay order id or payment id.
    """
    payment_ids = [
        {field: doc[field]}
        for field in ("razorpay_order_id", "razorpay_payment_id")
        if doc.get(field)
    ]
    if not payment_ids:
        return
    existing = await db[BOOKINGS].find_one({"$or": payment_ids})
    if existing:
        logger.warning(
            f"Payment {doc.get('razorpay_payment_id')} (order {doc.get('razorpay_order_id')}) "
            f"already backs booking {existing.get('booking_id')}"
        )
        raise DuplicatePaymentError("This payment has already been used for a booking")


async def insert_booking(db, doc: dict) -> dict:
    """
    Insert a new booking, regenerating the booking_id on a unique-index clash.

    Returns:
        The stored document, including its _id

    Raises:
        DuplicatePaymentError: if the Razorpay order or payment already backs a booking
    """
    for attempt in range(1, MAX_BOOKING_ID_ATTEMPTS + 1):
        prepare_booking_for_write(doc)
        try:
            result = await db[BOOKINGS].insert_one(doc)
        except DuplicateKeyError:
            await reject_reused_payment(db, doc)
            logger.warning(f"Booking ID {doc['booking_id']} already taken (attempt {attempt}), regenerating")
            doc.pop("booking_id", None)
            doc.pop("_id", None)
            continue
        doc["_id"] = result.inserted_id
        return doc

    logger.error(f"Could not assign a unique booking ID after {MAX_BOOKING_ID_ATTEMPTS} attempts")
    raise InfrastructureError("Server error while creating booking")


# ---------------------------------------------------------------------------
# Per-car booking lease
# ---------------------------------------------------------------------------

async def acquire_car_lease(db, car_id: ObjectId, settings: Settings) -> str:
    """
    Claim the car's booking lease so only one commit at a time can run the
    overlap re-check and insert for this car.

    The claim is a single conditional update on the car document; an expired
    lease (holder crashed) can be taken over.

    Returns:
        The lease token, needed to release it

    Raises:
        BusinessRuleViolation: if the lease stays taken for every retry
    """
    token = uuid.uuid4().hex
    for attempt in range(1, settings.booking_lock_retries + 1):
        now = utc_now()
        previous = await db[CARS].find_one_and_update(
            {
                "_id": car_id,
                "$or": [
                    {"booking_lock": None},
                    {"booking_lock.expires_at": {"$lt": now}},
                ],
            },
            {"$set": {"booking_lock": {
                "token": token,
                "expires_at": now + timedelta(seconds=settings.booking_lock_seconds),
            }}},
        )
        if previous is not None:
            if previous.get("booking_lock"):
                logger.warning(f"Took over expired booking lease on car {car_id}")
            return token

        logger.info(f"Booking lease on car {car_id} busy (attempt {attempt}/{settings.booking_lock_retries})")
        await asyncio.sleep(settings.booking_lock_retry_delay)

    raise BusinessRuleViolation("Car is currently being booked. Please try again.")


async def release_car_lease(db, car_id: ObjectId, token: str) -> None:
    await db[CARS].update_one(
        {"_id": car_id, "booking_lock.token": token},
        {"$unset": {"booking_lock": ""}},
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def commit_booking(
    db,
    settings: Settings,
    user_id: str,
    car: dict,
    request: BookingRequest,
    order_id: str,
    payment_id: str,
) -> dict:
    """
    Persist a paid booking as confirmed.

    Runs under the car's lease: rejects a payment that already backs a
    booking, re-checks for overlapping bookings (the authoritative check),
    recomputes the amount from the stored rates, inserts the booking and
    bumps the car's booking counter.

    Once the insert succeeds the booking is returned; a failure to bump the
    counter or release the lease is only logged (the lease expires).

    Raises:
        DuplicatePaymentError: if the order or payment was already used
        BusinessRuleViolation: if the car was taken meanwhile or the amount is invalid
    """
    car_id = car["_id"]
    start, end = booking_window(request.start_date, request.end_date, request.start_time, request.end_time)

    token = await acquire_car_lease(db, car_id, settings)
    try:
        await reject_reused_payment(db, {"razorpay_order_id": order_id, "razorpay_payment_id": payment_id})

        overlapping = await find_overlapping_booking(db, car_id, start, end)
        if overlapping:
            logger.warning(
                f"Car {car_id} was booked ({overlapping.get('booking_id')}) "
                f"between order creation and payment {payment_id}"
            )
            raise BusinessRuleViolation("Car is no longer available for the selected dates/times.")

        duration, total_amount = compute_booking_details(
            Car.from_document(car),
            request.start_date,
            request.end_date,
            request.start_time,
            request.end_time,
            request.booking_type,
        )

        now = utc_now()
        doc = {
            "user_id": user_id,
            "car_id": car_id,
            "start_date": start,
            "end_date": end,
            "start_time": request.start_time,
            "end_time": request.end_time,
            "booking_type": request.booking_type,
            "duration": duration,
            "total_amount": total_amount,
            "status": "confirmed",
            "payment_status": "paid",
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "pickup_location": request.pickup_location,
            "dropoff_location": request.dropoff_location,
            "special_requests": request.special_requests,
            "created_at": now,
        }
        booking = await insert_booking(db, doc)
        try:
            await db[CARS].update_one({"_id": car_id}, {"$inc": {"total_bookings": 1}})
        except PyMongoError as e:
            logger.error(f"Booking {booking['booking_id']} stored but total_bookings of car {car_id} not updated: {str(e)}")
    finally:
        try:
            await release_car_lease(db, car_id, token)
        except PyMongoError as e:
            logger.warning(f"Could not release booking lease on car {car_id}, it expires on its own: {str(e)}")

    logger.info(
        f"[BOOKED] {booking['booking_id']} | car {car_id} | user {user_id} | "
        f"{start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M} | {total_amount}"
    )
    return booking


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

async def _load_booking(db, booking_id: str) -> dict:
    doc = await db[BOOKINGS].find_one({"_id": to_object_id(booking_id, "booking")})
    if not doc:
        raise NotFoundError("Booking not found")
    return doc


async def _write_status(db, doc: dict, status: str, expected: Optional[dict] = None) -> Optional[dict]:
    """Write a new status; returns None when the stored booking no longer matches `expected`."""
    doc["status"] = status
    prepare_booking_for_write(doc)
    return await db[BOOKINGS].find_one_and_update(
        {"_id": doc["_id"], **(expected or {})},
        {"$set": {
            "status": status,
            "booking_id": doc["booking_id"],
            "updated_at": doc["updated_at"],
        }},
        return_document=ReturnDocument.AFTER,
    )


async def cancel_booking(db, identity: Identity, booking_id: str) -> dict:
    """
    Cancel a booking on behalf of its owner.

    Only the owner may cancel, only strictly before the booking starts and
    only once.
    """
    doc = await _load_booking(db, booking_id)

    if doc["user_id"] != identity.id:
        raise AuthorizationError("Access denied")

    if doc["start_date"] <= utc_now():
        raise BusinessRuleViolation("Cannot cancel booking that has already started")

    if doc["status"] == "cancelled":
        raise BusinessRuleViolation("Booking is already cancelled")

    # Matches nothing if a concurrent request cancelled it first
    updated = await _write_status(db, doc, "cancelled", expected={"status": {"$ne": "cancelled"}})
    if not updated:
        raise BusinessRuleViolation("Booking is already cancelled")
    logger.info(f"[CANCELLED] {updated['booking_id']} by user {identity.id}")
    return updated


async def set_booking_status(db, booking_id: str, status: str) -> dict:
    """Administrative override: set any status without owner/time checks."""
    doc = await _load_booking(db, booking_id)
    previous = doc.get("status")
    updated = await _write_status(db, doc, status)
    if not updated:
        raise NotFoundError("Booking not found")
    logger.info(f"[STATUS] {updated['booking_id']}: {previous} -> {status} (admin)")
    return updated


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def load_docs_by_id(db, collection: str, ids: Iterable, fields: Iterable[str]) -> Dict[str, dict]:
    """
    Load display fields for a set of referenced documents in one query.

    Ids may be ObjectIds or their string form; invalid ones are skipped.
    """
    object_ids = set()
    for value in ids:
        if isinstance(value, ObjectId):
            object_ids.add(value)
        elif value and ObjectId.is_valid(value):
            object_ids.add(ObjectId(value))
    if not object_ids:
        return {}

    cursor = db[collection].find({"_id": {"$in": list(object_ids)}})
    docs = await cursor.to_list(length=None)
    return {str(doc["_id"]): pick_fields(doc, fields) for doc in docs}


async def populate_bookings(db, docs: List[dict], car_fields, user_fields=None) -> List[dict]:
    """Serialize bookings with car (and optionally user) display fields."""
    cars = await load_docs_by_id(db, CARS, (d["car_id"] for d in docs), car_fields)
    users = {}
    if user_fields:
        users = await load_docs_by_id(db, USERS, (d["user_id"] for d in docs), user_fields)

    return [
        serialize_booking(
            doc,
            car=cars.get(str(doc["car_id"])),
            user=users.get(str(doc["user_id"])) if user_fields else None,
        )
        for doc in docs
    ]


async def _page_of_bookings(db, filt: dict, page: int, limit: int) -> Tuple[List[dict], int]:
    skip = (page - 1) * limit
    cursor = db[BOOKINGS].find(filt).sort([("created_at", DESCENDING)]).skip(skip).limit(limit)
    docs = await cursor.to_list(length=None)
    total = await db[BOOKINGS].count_documents(filt)
    return docs, total


async def list_user_bookings(
    db,
    identity: Identity,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
) -> dict:
    """The caller's own bookings, newest first."""
    filt = {"user_id": identity.id}
    if status:
        filt["status"] = status

    docs, total = await _page_of_bookings(db, filt, page, limit)
    bookings = await populate_bookings(db, docs, CAR_LIST_FIELDS)
    return {
        "bookings": bookings,
        "pagination": build_pagination(page, limit, total, len(bookings), "total_bookings"),
    }


async def get_booking_for_identity(db, identity: Identity, booking_id: str) -> dict:
    """A single booking, visible to its owner and to admins."""
    doc = await _load_booking(db, booking_id)
    if doc["user_id"] != identity.id and not identity.is_admin:
        raise AuthorizationError("Access denied")

    populated = await populate_bookings(db, [doc], CAR_DETAIL_FIELDS, USER_DETAIL_FIELDS)
    return populated[0]


async def list_all_bookings(
    db,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """Admin listing; the date range filters on creation time."""
    filt: dict = {}
    if status:
        filt["status"] = status
    if start_date and end_date:
        filt["created_at"] = {"$gte": start_date, "$lte": end_date}

    docs, total = await _page_of_bookings(db, filt, page, limit)
    bookings = await populate_bookings(
        db, docs, ("title", "brand", "model", "image"), USER_DETAIL_FIELDS
    )
    return {
        "bookings": bookings,
        "pagination": build_pagination(page, limit, total, len(bookings), "total_bookings"),
    }
