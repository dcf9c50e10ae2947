"""
Database operations for the payment reconciliation ledger.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timezone
from typing import List, Optional
import logging

from models import (
    ORDER_COMMIT_FAILED,
    ORDER_COMMITTED,
    ORDER_CREATED,
    ORDER_RECONCILED,
    PaymentOrder,
)

logger = logging.getLogger(__name__)


async def record_order(
    session: AsyncSession,
    order_id: str,
    receipt: str,
    user_id: str,
    car_id: str,
    amount: int,
    currency: str,
) -> PaymentOrder:
    """
    Record a freshly created provider order.

    Note: This function does NOT commit - caller must handle transaction.
    """
    order = PaymentOrder(
        order_id=order_id,
        receipt=receipt,
        user_id=user_id,
        car_id=car_id,
        amount=amount,
        currency=currency,
        status=ORDER_CREATED,
    )
    session.add(order)
    logger.info(f"[LEDGER] Order {order_id} created | user {user_id} | car {car_id} | {amount} {currency}")
    return order


async def get_order(session: AsyncSession, order_id: str) -> Optional[PaymentOrder]:
    result = await session.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id))
    return result.scalar_one_or_none()


async def upsert_order_outcome(
    session: AsyncSession,
    order_id: str,
    status: str,
    payment_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
    user_id: Optional[str] = None,
    car_id: Optional[str] = None,
) -> PaymentOrder:
    """
    Upsert the outcome of a verified payment: update if the order row exists,
    insert it if not (e.g. the order was created before the ledger was up).

    Note: This function does NOT commit - caller must handle transaction.

    Args:
        session: Database session
        order_id: provider order id
        status: committed or commit_failed
        payment_id: provider payment id
        booking_id: booking reference when committed
        failure_reason: why the commit failed
        user_id: paying user, used when inserting
        car_id: booked car, used when inserting

    Returns:
        PaymentOrder model instance
    """
    result = await session.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id))
    existing = result.scalar_one_or_none()

    if existing:
        logger.info(f"[UPDATE] Order {order_id} | {existing.status} -> {status}")
        existing.status = status
        existing.payment_id = payment_id
        existing.booking_id = booking_id
        existing.failure_reason = failure_reason
        existing.updated_at = datetime.now(timezone.utc)
        return existing

    logger.info(f"[INSERT] Order {order_id} | Status: {status}")
    order = PaymentOrder(
        order_id=order_id,
        user_id=user_id,
        car_id=car_id,
        status=status,
        payment_id=payment_id,
        booking_id=booking_id,
        failure_reason=failure_reason,
    )
    session.add(order)
    return order


async def mark_committed(session: AsyncSession, order_id: str, payment_id: str, booking_id: str, **kwargs) -> PaymentOrder:
    return await upsert_order_outcome(
        session, order_id, ORDER_COMMITTED, payment_id=payment_id, booking_id=booking_id, **kwargs
    )


async def mark_commit_failed(session: AsyncSession, order_id: str, payment_id: str, reason: str, **kwargs) -> PaymentOrder:
    return await upsert_order_outcome(
        session, order_id, ORDER_COMMIT_FAILED, payment_id=payment_id, failure_reason=reason, **kwargs
    )


async def list_unreconciled_orders(session: AsyncSession) -> List[PaymentOrder]:
    """Paid orders whose booking was never written, oldest first."""
    result = await session.execute(
        select(PaymentOrder)
        .where(PaymentOrder.status == ORDER_COMMIT_FAILED)
        .order_by(PaymentOrder.created_at)
    )
    return list(result.scalars().all())


async def mark_reconciled(session: AsyncSession, order_id: str) -> Optional[PaymentOrder]:
    """
    Close out a commit_failed order after it was handled out of band.

    Returns None if the order is unknown or not in commit_failed.
    """
    result = await session.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id))
    order = result.scalar_one_or_none()
    if order is None or order.status != ORDER_COMMIT_FAILED:
        return None

    order.status = ORDER_RECONCILED
    order.updated_at = datetime.now(timezone.utc)
    logger.info(f"[RECONCILED] Order {order_id}")
    return order
