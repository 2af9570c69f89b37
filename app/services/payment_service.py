"""
Payment persistence and status transitions
"""
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import Payment
from app.schemas.payment import PaymentStatus, ALLOWED_TRANSITIONS
from app.core.logging_config import logger


class InvalidStatusTransition(Exception):
    """Raised when a status update would move a payment backwards"""

    def __init__(self, payment_id: int, current: str, requested: str):
        self.payment_id = payment_id
        self.current = current
        self.requested = requested
        super().__init__(f"Payment {payment_id} cannot move from {current} to {requested}")


class ActivePaymentExists(Exception):
    """Raised when a booking already has a payment that has not failed"""

    def __init__(self, booking_id: int):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} already has an active payment")


class PaymentService:
    """Service for payment record operations"""

    @staticmethod
    def create_payment(
        db: Session,
        booking_id: int,
        pidx: str,
        amount_in_paisa: int,
        purchase_order_id: str,
        product_name: str,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None
    ) -> Payment:
        """
        Store a freshly initiated payment

        Raises:
            ActivePaymentExists: If another non-failed payment for the booking was stored first
        """
        now = datetime.now(timezone.utc)
        payment = Payment(
            booking_id=booking_id,
            pidx=pidx,
            status=PaymentStatus.INITIATED.value,
            amount=amount_in_paisa,
            purchase_order_id=purchase_order_id,
            product_name=product_name,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            gateway_response=gateway_response,
            created_at=now,
            updated_at=now
        )
        db.add(payment)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if PaymentService.get_active_payment_for_booking(db, booking_id):
                raise ActivePaymentExists(booking_id)
            raise
        db.refresh(payment)
        logger.info(f"Payment {payment.id} created for booking {booking_id} (pidx={pidx})")
        return payment

    @staticmethod
    def get_payment(db: Session, payment_id: int) -> Optional[Payment]:
        """Get payment by ID"""
        return db.query(Payment).filter(Payment.id == payment_id).first()

    @staticmethod
    def get_payment_by_pidx(db: Session, pidx: str) -> Optional[Payment]:
        """Get payment by Khalti pidx"""
        return db.query(Payment).filter(Payment.pidx == pidx).first()

    @staticmethod
    def get_payment_by_identifier(db: Session, identifier: str) -> Optional[Payment]:
        """Resolve an all-digit identifier as a payment ID, anything else as a pidx"""
        if identifier.isdigit():
            return PaymentService.get_payment(db, int(identifier))
        return PaymentService.get_payment_by_pidx(db, identifier)

    @staticmethod
    def get_active_payment_for_booking(db: Session, booking_id: int) -> Optional[Payment]:
        """Get the booking's non-failed payment, if any"""
        return db.query(Payment).filter(
            Payment.booking_id == booking_id,
            Payment.status != PaymentStatus.FAILED.value
        ).order_by(Payment.created_at.desc()).first()

    @staticmethod
    def list_payments(db: Session, skip: int = 0, limit: int = 100) -> List[Payment]:
        """List payments, newest first"""
        return db.query(Payment).order_by(
            Payment.created_at.desc(), Payment.id.desc()
        ).offset(skip).limit(limit).all()

    @staticmethod
    def update_status(
        db: Session,
        payment: Payment,
        status: str,
        transaction_id: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None
    ) -> Payment:
        """
        Move a payment forward through the state machine

        A same-status update only refreshes updated_at.

        Raises:
            InvalidStatusTransition: If the requested status is not reachable
        """
        if status != payment.status and status not in ALLOWED_TRANSITIONS.get(payment.status, ()):
            raise InvalidStatusTransition(payment.id, payment.status, status)

        if status != payment.status:
            logger.info(f"Payment {payment.id} status {payment.status} -> {status}")
            payment.status = status
        if transaction_id:
            payment.transaction_id = transaction_id
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        payment.updated_at = datetime.now(timezone.utc)

        db.commit()
        db.refresh(payment)
        return payment


# Global instance
payment_service = PaymentService()
