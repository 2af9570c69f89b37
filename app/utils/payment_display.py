"""
Display helpers for payment status, NPR amounts and timestamps
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class StatusBadge:
    """Visual representation of a payment status"""
    label: str
    icon: str
    color: str

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


UNKNOWN_BADGE = StatusBadge(label="Unknown", icon="help-circle", color="gray")

STATUS_BADGES = {
    "completed": StatusBadge(label="Completed", icon="check-circle", color="green"),
    "pending": StatusBadge(label="Pending", icon="clock", color="yellow"),
    "failed": StatusBadge(label="Failed", icon="alert-circle", color="red"),
    "initiated": StatusBadge(label="Initiated", icon="clock", color="blue"),
}

STATUS_MESSAGES = {
    "completed": "Payment completed successfully! The transaction has been processed and confirmed.",
    "failed": "Payment failed. Please try again or contact support if the issue persists.",
    "pending": "Payment is being processed. This may take a few minutes to complete.",
}


def describe_status(status: Optional[str]) -> StatusBadge:
    """Map a raw payment status to its badge; unrecognized values get the neutral badge"""
    return STATUS_BADGES.get(status or "", UNKNOWN_BADGE)


def status_message(status: Optional[str]) -> Optional[str]:
    return STATUS_MESSAGES.get(status or "")


def format_npr(amount: Union[int, float, None], in_paisa: bool = False) -> str:
    """
    Format an amount as Nepalese rupees

    Args:
        amount: Amount in NPR, or in paisa when in_paisa is set
        in_paisa: Whether the amount is in paisa (1 NPR = 100 paisa)

    Returns:
        String such as "NPR 2,500.00"
    """
    if amount is None:
        return "-"
    value = amount / 100 if in_paisa else amount
    return f"NPR {value:,.2f}"


def format_timestamp(value: Union[datetime, str, None]) -> str:
    """Format a datetime or ISO-8601 string as e.g. "Oct 5, 02:30 PM" """
    if value is None or value == "":
        return "-"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return f"{value:%b} {value.day}, {value:%I:%M %p}"


def present_payment(payment: Any) -> Dict[str, Any]:
    """
    Build the display model for a payment projection

    Args:
        payment: PaymentRecord (or anything with the same attributes)

    Returns:
        Dictionary with badge, message, formatted amount, customer and timestamps
    """
    badge = describe_status(payment.status)
    return {
        "id": payment.id,
        "pidx": payment.pidx,
        "status": payment.status,
        "badge": badge.as_dict(),
        "message": status_message(payment.status),
        "amount": format_npr(payment.amount, in_paisa=True),
        "customer": payment.customer_name or "-",
        "created": format_timestamp(payment.created_at),
        "updated": format_timestamp(payment.updated_at),
    }
