"""
SQLAlchemy models for the payment subsystem
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, text
from sqlalchemy.sql import func

from app.db.session import Base
from app.schemas.payment import PaymentStatus, TERMINAL_STATUSES


class Payment(Base):
    """Khalti payment attempt for a booking"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, index=True)
    pidx = Column(String(255), unique=True, nullable=False, index=True)
    booking_id = Column(Integer, nullable=False, index=True)
    status = Column(String(50), nullable=False, default=PaymentStatus.INITIATED.value)
    amount = Column(Integer, nullable=False)  # paisa
    currency = Column(String(10), nullable=False, default="NPR")
    purchase_order_id = Column(String(255), nullable=False)
    product_name = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_payments_booking_status", "booking_id", "status"),
        # At most one payment per booking that has not failed
        Index(
            "uq_payments_booking_active",
            "booking_id",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'")
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
