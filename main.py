from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import logging

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import routes
from catalog import ADMIN_PAGE_SIZE, MAX_PAGE_SIZE, PUBLIC_PAGE_SIZE
from config import LOG_DATE_FORMAT, LOG_FORMAT, LOG_LEVEL, get_settings
from database import close_db, create_ledger_engine, create_session_maker, init_db
from dependencies import get_current_user, get_db, get_ledger_sessions, get_payment_flow, require_admin
from errors import CarRentalError
from mongo_database import close_client, ensure_indexes_with_retry, get_database
from payments import PaymentFlow
from schemas import (
    AvailabilityRequest,
    BookingRequest,
    BookingStatus,
    BookingStatusUpdate,
    CarCreate,
    CarUpdate,
    Identity,
    PaymentVerificationRequest,
)

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.validate()
    app.state.settings = settings

    app.state.db = get_database(settings)
    # Booking id and payment uniqueness depend on these indexes
    await ensure_indexes_with_retry(app.state.db)

    engine = create_ledger_engine(settings.database_url)
    ledger_ready = await init_db(engine)
    app.state.ledger_sessions = create_session_maker(engine) if ledger_ready else None

    app.state.http_client = httpx.AsyncClient()
    logger.info("✅ Car rental API started")
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await close_db(engine)
        close_client()


app = FastAPI(
    title="Car Rental API",
    description="Car catalog, availability, payment-backed bookings and fleet administration",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(CarRentalError)
async def car_rental_error_handler(request: Request, exc: CarRentalError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Route not found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
    return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=exc.headers)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=503, content={"message": "Database unavailable"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Something went wrong!"})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    return {"message": "Car Rental API - bookings, payments and fleet management"}


@app.get("/api/health")
async def health():
    return {"message": "Car Rental API is running!", "timestamp": datetime.now(timezone.utc).isoformat()}


# ---------------------------------------------------------------------------
# Cars
# ---------------------------------------------------------------------------

@app.get("/api/cars")
async def list_cars(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(PUBLIC_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Page size"),
    search: Optional[str] = Query(None, description="Free text over title, brand and model"),
    brand: Optional[str] = None,
    fuel_type: Optional[str] = None,
    transmission: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort_by: str = "created_at",
    sort_order: str = Query("desc", description="asc|desc"),
    start_date: Optional[str] = Query(None, description="Exclude cars booked from this date (ISO 8601)"),
    end_date: Optional[str] = Query(None, description="Exclude cars booked until this date (ISO 8601)"),
    db=Depends(get_db),
):
    return await routes.list_cars_route(
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
        start_date=start_date,
        end_date=end_date,
    )


@app.get("/api/cars/filters/brands")
async def list_brands(db=Depends(get_db)):
    return await routes.list_brands_route(db)


@app.get("/api/cars/{car_id}")
async def get_car(car_id: str, db=Depends(get_db)):
    return await routes.get_car_route(db, car_id)


@app.post("/api/cars/{car_id}/check-availability")
async def check_availability(car_id: str, body: AvailabilityRequest, db=Depends(get_db)):
    return await routes.check_availability_route(db, car_id, body)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

@app.post("/api/bookings/create-razorpay-order")
async def create_razorpay_order(
    body: BookingRequest,
    identity: Identity = Depends(get_current_user),
    flow: PaymentFlow = Depends(get_payment_flow),
):
    return await routes.create_order_route(flow, identity, body)


@app.post("/api/bookings/verify-payment", status_code=201)
async def verify_payment(
    body: PaymentVerificationRequest,
    identity: Identity = Depends(get_current_user),
    flow: PaymentFlow = Depends(get_payment_flow),
    db=Depends(get_db),
):
    return await routes.verify_payment_route(flow, db, identity, body)


@app.get("/api/bookings/my-bookings")
async def my_bookings(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[BookingStatus] = None,
    identity: Identity = Depends(get_current_user),
    db=Depends(get_db),
):
    return await routes.my_bookings_route(db, identity, page=page, limit=limit, status=status)


@app.get("/api/bookings/{booking_id}")
async def get_booking(booking_id: str, identity: Identity = Depends(get_current_user), db=Depends(get_db)):
    return await routes.get_booking_route(db, identity, booking_id)


@app.patch("/api/bookings/{booking_id}/cancel")
async def cancel_booking(booking_id: str, identity: Identity = Depends(get_current_user), db=Depends(get_db)):
    return await routes.cancel_booking_route(db, identity, booking_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.get("/api/admin/dashboard")
async def admin_dashboard(admin: Identity = Depends(require_admin), db=Depends(get_db)):
    return await routes.dashboard_route(db)


@app.get("/api/admin/cars")
async def admin_list_cars(
    page: int = Query(1, ge=1),
    limit: int = Query(ADMIN_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = None,
    is_available: Optional[bool] = None,
    admin: Identity = Depends(require_admin),
    db=Depends(get_db),
):
    return await routes.admin_cars_route(db, page=page, limit=limit, search=search, is_available=is_available)


@app.post("/api/admin/cars", status_code=201)
async def admin_create_car(body: CarCreate, admin: Identity = Depends(require_admin), db=Depends(get_db)):
    return await routes.create_car_route(db, body)


@app.put("/api/admin/cars/{car_id}")
async def admin_update_car(car_id: str, body: CarUpdate, admin: Identity = Depends(require_admin), db=Depends(get_db)):
    return await routes.update_car_route(db, car_id, body)


@app.delete("/api/admin/cars/{car_id}")
async def admin_delete_car(car_id: str, admin: Identity = Depends(require_admin), db=Depends(get_db)):
    return await routes.delete_car_route(db, car_id)


@app.get("/api/admin/bookings")
async def admin_list_bookings(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[BookingStatus] = None,
    start_date: Optional[str] = Query(None, description="Created on/after (ISO 8601)"),
    end_date: Optional[str] = Query(None, description="Created on/before (ISO 8601)"),
    admin: Identity = Depends(require_admin),
    db=Depends(get_db),
):
    return await routes.admin_bookings_route(
        db, page=page, limit=limit, status=status, start_date=start_date, end_date=end_date
    )


@app.patch("/api/admin/bookings/{booking_id}/status")
async def admin_update_booking_status(
    booking_id: str,
    body: BookingStatusUpdate,
    admin: Identity = Depends(require_admin),
    db=Depends(get_db),
):
    return await routes.update_booking_status_route(db, admin, booking_id, body)


@app.get("/api/admin/payments/unreconciled")
async def admin_unreconciled_payments(
    admin: Identity = Depends(require_admin),
    ledger_sessions=Depends(get_ledger_sessions),
):
    return await routes.unreconciled_payments_route(ledger_sessions)


@app.patch("/api/admin/payments/{order_id}/reconcile")
async def admin_reconcile_payment(
    order_id: str,
    admin: Identity = Depends(require_admin),
    ledger_sessions=Depends(get_ledger_sessions),
):
    return await routes.reconcile_payment_route(ledger_sessions, admin, order_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
