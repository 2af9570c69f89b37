from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PaymentStatus(str, Enum):
    """Payment status enumeration"""
    INITIATED = "initiated"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value})

# Forward-only transitions of the payment state machine
ALLOWED_TRANSITIONS = {
    PaymentStatus.INITIATED.value: frozenset({
        PaymentStatus.PENDING.value,
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    }),
    PaymentStatus.PENDING.value: frozenset({
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    }),
    PaymentStatus.COMPLETED.value: frozenset(),
    PaymentStatus.FAILED.value: frozenset(),
}


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


class CamelModel(BaseModel):
    """Base schema serialized with the camelCase keys the web client uses"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfo(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class PaymentInitiateRequest(CamelModel):
    """Schema for payment initiation request (amount in NPR)"""
    booking_id: Optional[int] = None
    amount: Optional[float] = None
    product_name: Optional[str] = None
    customer_info: Optional[CustomerInfo] = None


class PaymentInitiation(CamelModel):
    """Schema for payment initiation response"""
    payment_id: int
    payment_url: str
    pidx: str
    expires_at: Optional[str] = None
    amount: str
    amount_in_paisa: int


class PaymentRecord(CamelModel):
    """Read-only projection of a stored payment"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    pidx: str
    # Kept as a plain string so unknown values reach the presenter instead of failing validation
    status: str
    amount: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    booking_id: Optional[int] = None
    product_name: Optional[str] = None
    purchase_order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WebhookPayload(BaseModel):
    """Khalti webhook body"""
    pidx: str
    status: str
    transaction_id: Optional[str] = None


class AdminSessionRequest(BaseModel):
    username: str
    password: str


class AdminSessionResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
