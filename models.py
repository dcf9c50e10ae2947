"""
Database models for the payment reconciliation ledger.
"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()

# Ledger statuses
ORDER_CREATED = "created"
ORDER_COMMITTED = "committed"
ORDER_COMMIT_FAILED = "commit_failed"
ORDER_RECONCILED = "reconciled"


def utc_now():
    """Get current UTC datetime with timezone awareness."""
    return datetime.now(timezone.utc)


class PaymentOrder(Base):
    """
    One row per payment order created with the provider.

    A row left in commit_failed means the customer paid but no booking was
    written; it stays there until someone reconciles it.
    """
    __tablename__ = "payment_orders"

    order_id = Column(String, primary_key=True, index=True)
    receipt = Column(String, nullable=True)
    user_id = Column(String, nullable=True, index=True)
    car_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=True)  # minor units
    currency = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ORDER_CREATED, index=True)
    payment_id = Column(String, nullable=True)
    booking_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "receipt": self.receipt,
            "user_id": self.user_id,
            "car_id": self.car_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_id": self.payment_id,
            "booking_id": self.booking_id,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
