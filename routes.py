"""
API routes/endpoints for the application.

Each *_route function runs one operation and translates store failures into
InfrastructureError; the handlers in main.py turn errors into responses.
"""
import functools
import logging
from typing import Optional

from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError

import bookings
import catalog
import dashboard
from availability import is_car_available
from data_processor import CAR_DETAIL_FIELDS, CAR_SUMMARY_FIELDS, USER_SUMMARY_FIELDS, serialize_car
from db_operations import list_unreconciled_orders, mark_reconciled
from errors import InfrastructureError, NotFoundError, ValidationFailed
from payments import PaymentFlow
from schemas import (
    AvailabilityRequest,
    BookingRequest,
    BookingStatusUpdate,
    CarCreate,
    CarUpdate,
    Identity,
    PaymentVerificationRequest,
    parse_instant,
)

logger = logging.getLogger(__name__)


def translate_store_errors(message: str):
    """Log store failures and re-raise them as InfrastructureError(message)."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (PyMongoError, SQLAlchemyError) as e:
                logger.error(f"Error in {func.__name__}: {type(e).__name__}: {str(e)}")
                raise InfrastructureError(message)
        return wrapper
    return decorator


def parse_query_date(value: Optional[str], field: str):
    if not value:
        return None
    try:
        return parse_instant(value)
    except ValueError:
        raise ValidationFailed([{"field": field, "message": "must be a valid ISO 8601 date"}])


# ---------------------------------------------------------------------------
# Cars
# ---------------------------------------------------------------------------

@translate_store_errors("Server error while fetching cars")
async def list_cars_route(
    db,
    page: int,
    limit: int,
    search: Optional[str] = None,
    brand: Optional[str] = None,
    fuel_type: Optional[str] = None,
    transmission: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
):
    logger.info(
        f"Cars request - page: {page}, limit: {limit}, search: {search}, brand: {brand}, "
        f"dates: {start_date or '-'} to {end_date or '-'}"
    )
    return await catalog.list_cars(
        db,
        page=page,
        limit=limit,
        search=search,
        brand=brand,
        fuel_type=fuel_type,
        transmission=transmission,
        min_price=min_price,
        max_price=max_price,
        sort_by=sort_by,
        sort_order=sort_order,
        start_date=parse_query_date(start_date, "start_date"),
        end_date=parse_query_date(end_date, "end_date"),
    )


@translate_store_errors("Server error while fetching car")
async def get_car_route(db, car_id: str):
    return serialize_car(await catalog.get_car(db, car_id))


@translate_store_errors("Server error while checking availability")
async def check_availability_route(db, car_id: str, body: AvailabilityRequest):
    car = await catalog.get_car(db, car_id)
    available = await is_car_available(db, car["_id"], body.start_date, body.end_date, car=car)
    return {
        "available": available,
        "message": (
            "Car is available for the selected dates"
            if available
            else "Car is not available for the selected dates"
        ),
    }


@translate_store_errors("Server error while fetching brands")
async def list_brands_route(db):
    return await catalog.list_brands(db)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

@translate_store_errors("Server error while creating payment order")
async def create_order_route(flow: PaymentFlow, identity: Identity, body: BookingRequest):
    logger.info(
        f"Order request - user: {identity.id}, car: {body.car_id}, {body.booking_type} "
        f"{body.start_date} {body.start_time} to {body.end_date} {body.end_time}"
    )
    return await flow.create_order(identity, body)


@translate_store_errors("Server error during payment verification or booking creation")
async def verify_payment_route(flow: PaymentFlow, db, identity: Identity, body: PaymentVerificationRequest):
    booking = await flow.verify_and_commit(identity, body)
    populated = await bookings.populate_bookings(db, [booking], CAR_DETAIL_FIELDS)
    return {
        "message": "Booking created and payment successful!",
        "booking": populated[0],
    }


@translate_store_errors("Server error while fetching bookings")
async def my_bookings_route(db, identity: Identity, page: int, limit: int, status: Optional[str] = None):
    return await bookings.list_user_bookings(db, identity, page=page, limit=limit, status=status)


@translate_store_errors("Server error while fetching booking")
async def get_booking_route(db, identity: Identity, booking_id: str):
    return await bookings.get_booking_for_identity(db, identity, booking_id)


@translate_store_errors("Server error while cancelling booking")
async def cancel_booking_route(db, identity: Identity, booking_id: str):
    booking = await bookings.cancel_booking(db, identity, booking_id)
    populated = await bookings.populate_bookings(db, [booking], CAR_SUMMARY_FIELDS)
    return {
        "message": "Booking cancelled successfully",
        "booking": populated[0],
    }


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@translate_store_errors("Server error while fetching dashboard data")
async def dashboard_route(db):
    return await dashboard.get_dashboard(db)


@translate_store_errors("Server error while adding car")
async def create_car_route(db, body: CarCreate):
    car = await catalog.create_car(db, body)
    return {"message": "Car added successfully", "car": serialize_car(car)}


@translate_store_errors("Server error while updating car")
async def update_car_route(db, car_id: str, body: CarUpdate):
    car = await catalog.update_car(db, car_id, body)
    return {"message": "Car updated successfully", "car": serialize_car(car)}


@translate_store_errors("Server error while deleting car")
async def delete_car_route(db, car_id: str):
    await catalog.delete_car(db, car_id)
    return {"message": "Car deleted successfully"}


@translate_store_errors("Server error while fetching cars")
async def admin_cars_route(db, page: int, limit: int, search: Optional[str] = None, is_available: Optional[bool] = None):
    return await catalog.list_admin_cars(db, page=page, limit=limit, search=search, is_available=is_available)


@translate_store_errors("Server error while fetching bookings")
async def admin_bookings_route(
    db,
    page: int,
    limit: int,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
):
    return await bookings.list_all_bookings(
        db,
        page=page,
        limit=limit,
        status=status,
        start_date=parse_query_date(start_date, "start_date"),
        end_date=parse_query_date(end_date, "end_date"),
    )


@translate_store_errors("Server error while updating booking status")
async def update_booking_status_route(db, admin: Identity, booking_id: str, body: BookingStatusUpdate):
    logger.info(f"Status change by admin {admin.id}: booking {booking_id} -> {body.status}")
    booking = await bookings.set_booking_status(db, booking_id, body.status)
    populated = await bookings.populate_bookings(db, [booking], CAR_SUMMARY_FIELDS, USER_SUMMARY_FIELDS)
    return {
        "message": "Booking status updated successfully",
        "booking": populated[0],
    }


def _require_ledger(ledger_sessions):
    if ledger_sessions is None:
        raise InfrastructureError("Payment ledger is not available")
    return ledger_sessions


@translate_store_errors("Server error while fetching payment orders")
async def unreconciled_payments_route(ledger_sessions):
    async with _require_ledger(ledger_sessions)() as session:
        orders = await list_unreconciled_orders(session)
    return {"orders": [order.to_dict() for order in orders], "total": len(orders)}


@translate_store_errors("Server error while reconciling payment order")
async def reconcile_payment_route(ledger_sessions, admin: Identity, order_id: str):
    async with _require_ledger(ledger_sessions)() as session:
        order = await mark_reconciled(session, order_id)
        if order is None:
            raise NotFoundError("No unreconciled payment order with this ID")
        await session.commit()
    logger.info(f"Payment order {order_id} reconciled by admin {admin.id}")
    return {"message": "Payment order marked as reconciled", "order": order.to_dict()}
