"""
Booking lifecycle: identifiers, pre-write checks, the per-car lease, commits
under concurrency, cancellation and admin status changes.
"""
import asyncio
import re
from datetime import date, datetime, timedelta

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

import bookings
from bookings import (
    acquire_car_lease,
    cancel_booking,
    commit_booking,
    generate_booking_id,
    get_booking_for_identity,
    insert_booking,
    list_user_bookings,
    prepare_booking_for_write,
    release_car_lease,
    set_booking_status,
)
from errors import (
    AuthorizationError,
    BusinessRuleViolation,
    DuplicatePaymentError,
    InfrastructureError,
    NotFoundError,
    ValidationFailed,
)
from mongo_database import BOOKINGS, CARS, utc_now
from schemas import Identity
from tests.conftest import booking_request, days_from_today, seed_booking, seed_car, seed_user

BOOKING_ID_RE = re.compile(r"^CG\d{13}[A-Z0-9]{5}$")


def identity_for(user: dict) -> Identity:
    return Identity.from_document(user)


def new_booking_doc(car_id, start, end, **overrides) -> dict:
    doc = {
        "user_id": "u1",
        "car_id": car_id,
        "start_date": start,
        "end_date": end,
        "start_time": "10:00",
        "end_time": "10:00",
        "booking_type": "daily",
        "duration": 2,
        "total_amount": 5000.0,
        "status": "confirmed",
        "payment_status": "paid",
        "pickup_location": "Airport",
        "dropoff_location": "Airport",
        "created_at": utc_now(),
    }
    doc.update(overrides)
    return doc


# ---------------------------------------------------------------------------
# Identifiers and pre-write checks
# ---------------------------------------------------------------------------

def test_booking_id_format():
    assert BOOKING_ID_RE.match(generate_booking_id())


def test_booking_ids_are_distinct():
    ids = {generate_booking_id() for _ in range(500)}
    assert len(ids) == 500


def test_prepare_assigns_missing_id_once():
    doc = new_booking_doc(ObjectId(), datetime(2030, 1, 1), datetime(2030, 1, 3))
    prepare_booking_for_write(doc)
    assigned = doc["booking_id"]
    assert BOOKING_ID_RE.match(assigned)

    prepare_booking_for_write(doc)
    assert doc["booking_id"] == assigned
    assert doc["updated_at"] is not None


@pytest.mark.parametrize("start, end", [
    (datetime(2030, 1, 3), datetime(2030, 1, 1)),
    (datetime(2030, 1, 1, 10), datetime(2030, 1, 1, 10)),
])
def test_prepare_rejects_bad_interval(start, end):
    with pytest.raises(BusinessRuleViolation) as exc:
        prepare_booking_for_write(new_booking_doc(ObjectId(), start, end))
    assert exc.value.message == "End date must be after start date"


def test_prepare_rejects_negative_amount():
    doc = new_booking_doc(ObjectId(), datetime(2030, 1, 1), datetime(2030, 1, 3), total_amount=-1)
    with pytest.raises(BusinessRuleViolation):
        prepare_booking_for_write(doc)


async def test_insert_regenerates_id_on_clash(db, monkeypatch):
    await db[BOOKINGS].insert_one({"booking_id": "CGTAKEN"})
    candidates = iter(["CGTAKEN", "CGTAKEN", "CGFRESH"])
    monkeypatch.setattr(bookings, "generate_booking_id", lambda: next(candidates))

    stored = await insert_booking(db, new_booking_doc(ObjectId(), datetime(2030, 1, 1), datetime(2030, 1, 3)))

    assert stored["booking_id"] == "CGFRESH"
    assert await db[BOOKINGS].count_documents({"booking_id": "CGFRESH"}) == 1


async def test_insert_gives_up_after_bounded_attempts(db, monkeypatch):
    await db[BOOKINGS].insert_one({"booking_id": "CGTAKEN"})
    monkeypatch.setattr(bookings, "generate_booking_id", lambda: "CGTAKEN")

    with pytest.raises(InfrastructureError):
        await insert_booking(db, new_booking_doc(ObjectId(), datetime(2030, 1, 1), datetime(2030, 1, 3)))


# ---------------------------------------------------------------------------
# Lease
# ---------------------------------------------------------------------------

async def test_lease_is_exclusive(db, fast_lease_settings):
    car = await seed_car(db)
    token = await acquire_car_lease(db, car["_id"], fast_lease_settings)

    with pytest.raises(BusinessRuleViolation) as exc:
        await acquire_car_lease(db, car["_id"], fast_lease_settings)
    assert exc.value.message == "Car is currently being booked. Please try again."

    await release_car_lease(db, car["_id"], token)
    assert await acquire_car_lease(db, car["_id"], fast_lease_settings)


async def test_expired_lease_is_taken_over(db, fast_lease_settings):
    car = await seed_car(db, booking_lock={"token": "stale", "expires_at": utc_now() - timedelta(minutes=5)})

    token = await acquire_car_lease(db, car["_id"], fast_lease_settings)

    stored = await db[CARS].find_one({"_id": car["_id"]})
    assert stored["booking_lock"]["token"] == token


async def test_release_with_wrong_token_keeps_lease(db, fast_lease_settings):
    car = await seed_car(db)
    token = await acquire_car_lease(db, car["_id"], fast_lease_settings)

    await release_car_lease(db, car["_id"], "someone-else")

    stored = await db[CARS].find_one({"_id": car["_id"]})
    assert stored["booking_lock"]["token"] == token


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

async def test_commit_stores_confirmed_paid_booking(db, settings):
    car = await seed_car(db, price_per_day=1000.0)
    request = booking_request(car["_id"], date(2030, 1, 1), date(2030, 1, 3))

    booking = await commit_booking(db, settings, "user-1", car, request, "order_1", "pay_1")

    assert BOOKING_ID_RE.match(booking["booking_id"])
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "paid"
    assert booking["razorpay_order_id"] == "order_1"
    assert booking["razorpay_payment_id"] == "pay_1"
    assert booking["duration"] == 2
    assert booking["total_amount"] == 2000.0
    assert booking["start_date"] == datetime(2030, 1, 1, 10)
    assert booking["end_date"] == datetime(2030, 1, 3, 10)

    stored_car = await db[CARS].find_one({"_id": car["_id"]})
    assert stored_car["total_bookings"] == 1
    assert "booking_lock" not in stored_car


async def test_commit_rejects_overlap_and_releases_lease(db, settings):
    car = await seed_car(db)
    await seed_booking(db, car["_id"], ObjectId(), datetime(2030, 1, 2), datetime(2030, 1, 4))
    request = booking_request(car["_id"], date(2030, 1, 1), date(2030, 1, 3))

    with pytest.raises(BusinessRuleViolation) as exc:
        await commit_booking(db, settings, "user-1", car, request, "order_1", "pay_1")
    assert exc.value.message == "Car is no longer available for the selected dates/times."

    stored_car = await db[CARS].find_one({"_id": car["_id"]})
    assert "booking_lock" not in stored_car
    assert stored_car["total_bookings"] == 0
    assert await db[BOOKINGS].count_documents({}) == 1


async def test_concurrent_commits_for_same_interval_book_once(db, settings):
    car = await seed_car(db)
    request = booking_request(car["_id"], date(2030, 2, 1), date(2030, 2, 3))

    results = await asyncio.gather(
        *(commit_booking(db, settings, f"user-{i}", car, request, f"order_{i}", f"pay_{i}") for i in range(5)),
        return_exceptions=True,
    )

    committed = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, BusinessRuleViolation)]
    assert len(committed) == 1
    assert len(rejected) == 4
    assert await db[BOOKINGS].count_documents({"car_id": car["_id"]}) == 1


async def test_concurrent_commits_get_distinct_ids(db, settings):
    cars = [await seed_car(db, title=f"Car {i}") for i in range(10)]

    results = await asyncio.gather(*(
        commit_booking(
            db, settings, "user-1", car,
            booking_request(car["_id"], date(2030, 3, 1), date(2030, 3, 2)),
            f"order_{i}", f"pay_{i}",
        )
        for i, car in enumerate(cars)
    ))

    assert len({b["booking_id"] for b in results}) == 10


# ---------------------------------------------------------------------------
# Cancellation and status changes
# ---------------------------------------------------------------------------

async def test_owner_cancels_future_booking(db):
    user = await seed_user(db)
    car = await seed_car(db)
    start = datetime.combine(days_from_today(10), datetime.min.time())
    booking = await seed_booking(db, car["_id"], user["_id"], start, start + timedelta(days=2))

    updated = await cancel_booking(db, identity_for(user), str(booking["_id"]))

    assert updated["status"] == "cancelled"
    assert updated["booking_id"] == booking["booking_id"]


async def test_only_owner_can_cancel(db):
    owner = await seed_user(db)
    stranger = await seed_user(db)
    car = await seed_car(db)
    start = datetime.combine(days_from_today(10), datetime.min.time())
    booking = await seed_booking(db, car["_id"], owner["_id"], start, start + timedelta(days=2))

    with pytest.raises(AuthorizationError):
        await cancel_booking(db, identity_for(stranger), str(booking["_id"]))


async def test_started_booking_cannot_be_cancelled(db):
    user = await seed_user(db)
    car = await seed_car(db)
    start = utc_now() - timedelta(hours=1)
    booking = await seed_booking(db, car["_id"], user["_id"], start, start + timedelta(days=1))

    with pytest.raises(BusinessRuleViolation) as exc:
        await cancel_booking(db, identity_for(user), str(booking["_id"]))
    assert exc.value.message == "Cannot cancel booking that has already started"


async def test_cancelled_booking_cannot_be_cancelled_again(db):
    user = await seed_user(db)
    car = await seed_car(db)
    start = datetime.combine(days_from_today(10), datetime.min.time())
    booking = await seed_booking(
        db, car["_id"], user["_id"], start, start + timedelta(days=2), status="cancelled"
    )

    with pytest.raises(BusinessRuleViolation) as exc:
        await cancel_booking(db, identity_for(user), str(booking["_id"]))
    assert exc.value.message == "Booking is already cancelled"


async def test_cancel_unknown_booking(db):
    user = await seed_user(db)
    with pytest.raises(NotFoundError):
        await cancel_booking(db, identity_for(user), str(ObjectId()))
    with pytest.raises(ValidationFailed):
        await cancel_booking(db, identity_for(user), "not-an-id")


async def test_admin_can_set_any_status(db):
    car = await seed_car(db)
    start = utc_now() - timedelta(days=3)
    booking = await seed_booking(db, car["_id"], ObjectId(), start, start + timedelta(days=1))

    updated = await set_booking_status(db, str(booking["_id"]), "completed")
    assert updated["status"] == "completed"

    updated = await set_booking_status(db, str(booking["_id"]), "cancelled")
    assert updated["status"] == "cancelled"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def test_user_bookings_are_paged_and_filtered(db):
    user = await seed_user(db)
    car = await seed_car(db)
    for i in range(3):
        start = datetime(2030, 4, 1 + 3 * i)
        await seed_booking(db, car["_id"], user["_id"], start, start + timedelta(days=1))
    await seed_booking(db, car["_id"], user["_id"], datetime(2030, 5, 1), datetime(2030, 5, 2), status="cancelled")
    await seed_booking(db, car["_id"], ObjectId(), datetime(2030, 6, 1), datetime(2030, 6, 2))

    page = await list_user_bookings(db, identity_for(user), page=1, limit=2)
    assert len(page["bookings"]) == 2
    assert page["pagination"]["total_bookings"] == 4
    assert page["pagination"]["has_next"] is True
    assert page["bookings"][0]["car"]["title"] == car["title"]

    cancelled = await list_user_bookings(db, identity_for(user), status="cancelled")
    assert [b["status"] for b in cancelled["bookings"]] == ["cancelled"]


async def test_booking_visible_to_owner_and_admin_only(db):
    owner = await seed_user(db)
    stranger = await seed_user(db)
    admin = await seed_user(db, role="admin")
    car = await seed_car(db)
    booking = await seed_booking(db, car["_id"], owner["_id"], datetime(2030, 7, 1), datetime(2030, 7, 3))

    seen = await get_booking_for_identity(db, identity_for(owner), str(booking["_id"]))
    assert seen["user"]["email"] == owner["email"]
    assert (await get_booking_for_identity(db, identity_for(admin), str(booking["_id"])))["id"] == str(booking["_id"])

    with pytest.raises(AuthorizationError):
        await get_booking_for_identity(db, identity_for(stranger), str(booking["_id"]))


# ---------------------------------------------------------------------------
# Payment reuse and post-insert failures
# ---------------------------------------------------------------------------

async def test_order_can_only_be_committed_once(db, settings):
    car = await seed_car(db)
    await commit_booking(
        db, settings, "user-1", car, booking_request(car["_id"], date(2030, 8, 1), date(2030, 8, 2)), "order_1", "pay_1"
    )

    with pytest.raises(DuplicatePaymentError):
        await commit_booking(
            db, settings, "user-1", car,
            booking_request(car["_id"], date(2030, 9, 1), date(2030, 9, 20)), "order_1", "pay_1",
        )

    assert await db[BOOKINGS].count_documents({"razorpay_order_id": "order_1"}) == 1
    assert "booking_lock" not in await db[CARS].find_one({"_id": car["_id"]})


async def test_insert_maps_payment_clash_to_duplicate_payment(db):
    await db[BOOKINGS].insert_one({"booking_id": "CGFIRST", "razorpay_payment_id": "pay_1"})
    doc = new_booking_doc(
        ObjectId(), datetime(2030, 1, 1), datetime(2030, 1, 3), razorpay_order_id="order_2", razorpay_payment_id="pay_1"
    )

    with pytest.raises(DuplicatePaymentError):
        await insert_booking(db, doc)


async def test_lease_release_failure_does_not_undo_commit(db, settings, monkeypatch):
    async def release_fails(*args, **kwargs):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(bookings, "release_car_lease", release_fails)
    car = await seed_car(db)

    booking = await commit_booking(
        db, settings, "user-1", car, booking_request(car["_id"], date(2030, 8, 1), date(2030, 8, 2)), "order_1", "pay_1"
    )

    assert booking["status"] == "confirmed"
    assert await db[BOOKINGS].count_documents({}) == 1


# ---------------------------------------------------------------------------
# Concurrent cancellation
# ---------------------------------------------------------------------------

async def test_cancel_on_stale_read_is_rejected(db, monkeypatch):
    user = await seed_user(db)
    car = await seed_car(db)
    start = datetime.combine(days_from_today(10), datetime.min.time())
    booking = await seed_booking(db, car["_id"], user["_id"], start, start + timedelta(days=2))
    snapshot = dict(booking)
    # Another request cancels between this request's read and its write
    await db[BOOKINGS].update_one({"_id": booking["_id"]}, {"$set": {"status": "cancelled"}})

    async def load_snapshot(db, booking_id):
        return dict(snapshot)

    monkeypatch.setattr(bookings, "_load_booking", load_snapshot)

    with pytest.raises(BusinessRuleViolation) as exc:
        await cancel_booking(db, identity_for(user), str(booking["_id"]))
    assert exc.value.message == "Booking is already cancelled"


async def test_concurrent_cancels_succeed_once(db):
    user = await seed_user(db)
    car = await seed_car(db)
    start = datetime.combine(days_from_today(10), datetime.min.time())
    booking = await seed_booking(db, car["_id"], user["_id"], start, start + timedelta(days=2))

    results = await asyncio.gather(
        *(cancel_booking(db, identity_for(user), str(booking["_id"])) for _ in range(3)),
        return_exceptions=True,
    )

    assert len([r for r in results if isinstance(r, dict)]) == 1
    assert len([r for r in results if isinstance(r, BusinessRuleViolation)]) == 2
