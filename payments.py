"""
Payment order creation and payment verification / booking commit.
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from availability import is_car_available
from bookings import commit_booking, reject_reused_payment
from config import Settings
from db_operations import get_order, mark_commit_failed, mark_committed, record_order
from errors import (
    BusinessRuleViolation,
    CarRentalError,
    DuplicatePaymentError,
    NotFoundError,
    PaymentSignatureError,
)
from models import PaymentOrder
from mongo_database import CARS, to_object_id
from payment_client import create_order, new_receipt_id, verify_signature
from pricing import booking_window, compute_booking_details, to_minor_units
from schemas import BookingRequest, Car, Identity, PaymentVerificationRequest

logger = logging.getLogger(__name__)


class PaymentFlow:
    """
    Two-step booking payment: create a provider order, then verify the
    provider's signature and commit the booking.

    Args:
        db: application database (Motor)
        settings: provides the provider credentials and currency
        http_client: client used to reach the payment provider
        ledger_sessions: session factory for the reconciliation ledger (optional)
    """

    def __init__(
        self,
        db,
        settings: Settings,
        http_client: httpx.AsyncClient,
        ledger_sessions: Optional[async_sessionmaker] = None,
    ):
        self.db = db
        self.settings = settings
        self.http_client = http_client
        self.ledger_sessions = ledger_sessions

    async def _load_car(self, car_id: str) -> dict:
        car = await self.db[CARS].find_one({"_id": to_object_id(car_id)})
        if not car:
            raise NotFoundError("Car not found")
        return car

    async def _write_ledger(self, operation, *args, **kwargs) -> None:
        # Ledger trouble is logged, it never blocks a booking
        if self.ledger_sessions is None:
            logger.warning(f"Payment ledger not configured, skipping {operation.__name__}")
            return
        try:
            async with self.ledger_sessions() as session:
                await operation(session, *args, **kwargs)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Payment ledger write failed ({operation.__name__}): {str(e)}")

    async def _read_ledger_order(self, order_id: str) -> Optional[PaymentOrder]:
        if self.ledger_sessions is None:
            return None
        try:
            async with self.ledger_sessions() as session:
                return await get_order(session, order_id)
        except SQLAlchemyError as e:
            logger.error(f"Payment ledger read failed for order {order_id}: {str(e)}")
            return None

    async def _check_against_order(self, identity: Identity, car: dict, details: BookingRequest, order_id: str) -> None:
        """
        Reject booking details that differ from what the order was created for.

        Only orders recorded in the ledger can be checked.
        """
        order = await self._read_ledger_order(order_id)
        if order is None:
            logger.warning(f"Order {order_id} not in the payment ledger, booking details not cross-checked")
            return

        _, total_amount = compute_booking_details(
            Car.from_document(car),
            details.start_date,
            details.end_date,
            details.start_time,
            details.end_time,
            details.booking_type,
        )
        mismatches = []
        if order.user_id and order.user_id != identity.id:
            mismatches.append("user")
        if order.car_id and order.car_id != details.car_id:
            mismatches.append("car")
        if order.amount is not None and order.amount != to_minor_units(total_amount):
            mismatches.append(f"amount {to_minor_units(total_amount)} != {order.amount}")
        if mismatches:
            logger.warning(f"Booking details do not match order {order_id}: {', '.join(mismatches)}")
            raise BusinessRuleViolation("Booking details do not match the payment order")

    async def create_order(self, identity: Identity, request: BookingRequest) -> dict:
        """
        Step 1: price the booking and open a provider order for it.

        Nothing is written to the bookings collection.

        Returns:
            Order details for the checkout form
        """
        car = await self._load_car(request.car_id)

        _, total_amount = compute_booking_details(
            Car.from_document(car),
            request.start_date,
            request.end_date,
            request.start_time,
            request.end_time,
            request.booking_type,
        )

        # Advisory check; the authoritative one runs after payment
        start, end = booking_window(request.start_date, request.end_date, request.start_time, request.end_time)
        if not await is_car_available(self.db, car["_id"], start, end, car=car):
            raise BusinessRuleViolation("Car is not available for the selected dates/times.")

        amount = to_minor_units(total_amount)
        receipt = new_receipt_id()
        order = await create_order(
            self.http_client, self.settings, amount, self.settings.payment_currency, receipt
        )

        await self._write_ledger(
            record_order,
            order_id=order["order_id"],
            receipt=receipt,
            user_id=identity.id,
            car_id=request.car_id,
            amount=order["amount"],
            currency=order["currency"],
        )

        return {
            "order_id": order["order_id"],
            "currency": order["currency"],
            "amount": order["amount"],
            "key_id": self.settings.razorpay_key_id,
            "car_title": car.get("title"),
            "user_name": identity.name,
            "user_email": identity.email,
            "user_phone": identity.phone,
        }

    async def verify_and_commit(self, identity: Identity, verification: PaymentVerificationRequest) -> dict:
        """
        Step 2: check the payment signature, then commit the booking.

        An invalid signature or a payment that already backs a booking writes
        nothing. Otherwise the customer has paid, so any later failure
        (including booking details that differ from the order) is written to
        the ledger as commit_failed before it propagates.

        Returns:
            The stored booking document

        Raises:
            PaymentSignatureError: if the signature does not match
            DuplicatePaymentError: if the order or payment was already used
        """
        order_id = verification.razorpay_order_id
        payment_id = verification.razorpay_payment_id

        if not verify_signature(order_id, payment_id, verification.razorpay_signature, self.settings.razorpay_key_secret):
            logger.warning(f"Invalid payment signature for order {order_id} (user {identity.id})")
            raise PaymentSignatureError("Payment verification failed: Invalid signature")

        await reject_reused_payment(self.db, {"razorpay_order_id": order_id, "razorpay_payment_id": payment_id})

        details = verification.booking_details
        try:
            car = await self._load_car(details.car_id)
            if not car.get("is_available", True):
                raise BusinessRuleViolation("Car is not available")
            await self._check_against_order(identity, car, details, order_id)

            booking = await commit_booking(
                self.db, self.settings, identity.id, car, details, order_id, payment_id
            )
        except DuplicatePaymentError:
            # Lost a race with another request for the same payment
            raise
        except Exception as e:
            reason = e.message if isinstance(e, CarRentalError) else f"{type(e).__name__}: {e}"
            logger.error(
                f"Payment {payment_id} (order {order_id}) was verified but the booking failed: {reason}"
            )
            await self._write_ledger(
                mark_commit_failed,
                order_id,
                payment_id,
                reason,
                user_id=identity.id,
                car_id=details.car_id,
            )
            raise

        await self._write_ledger(
            mark_committed,
            order_id,
            payment_id,
            booking["booking_id"],
            user_id=identity.id,
            car_id=details.car_id,
        )
        return booking
