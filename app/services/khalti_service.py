"""
Khalti payment gateway service
Handles payment initiation, lookup, webhook verification and amount conversion
against Khalti's ePayment API
"""
import hashlib
import hmac
import secrets
import string
import time
from typing import Dict, Optional, Any

import requests

from app.core.config import settings
from app.core.logging_config import logger
from app.schemas.payment import PaymentStatus
from app.utils.payment_display import format_npr


class KhaltiServiceError(Exception):
    """Raised when Khalti rejects a request or cannot be reached"""


# Khalti lookup statuses mapped onto the payment state machine.
# Refunds happen after completion and leave the stored status alone.
GATEWAY_STATUS_MAP = {
    "Initiated": PaymentStatus.INITIATED.value,
    "Pending": PaymentStatus.PENDING.value,
    "Completed": PaymentStatus.COMPLETED.value,
    "Expired": PaymentStatus.FAILED.value,
    "User canceled": PaymentStatus.FAILED.value,
}

_REFERENCE_ALPHABET = string.digits + string.ascii_lowercase


class KhaltiService:
    """Khalti ePayment (v2) gateway service"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        public_key: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None
    ):
        """Initialize Khalti service with credentials"""
        self.secret_key = settings.KHALTI_SECRET_KEY if secret_key is None else secret_key
        self.public_key = settings.KHALTI_PUBLIC_KEY if public_key is None else public_key
        self.environment = environment or settings.KHALTI_ENVIRONMENT
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.session = session or requests.Session()

        if self.environment == "production":
            self.base_url = "https://khalti.com/api/v2/epayment"
        else:
            self.base_url = "https://dev.khalti.com/api/v2/epayment"

        # Validate credentials
        if not self.secret_key:
            if self.environment == "production":
                logger.error("Khalti API keys are required in production. Set KHALTI_PUBLIC_KEY and KHALTI_SECRET_KEY.")
            else:
                logger.warning("Khalti secret key not configured. Payment integration will not work.")

        logger.info(f"Khalti service initialized with environment: {self.environment}")

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        """POST to the ePayment API and return the decoded body"""
        url = f"{self.base_url}/{path}/"
        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Khalti {action} request failed: {str(e)}")
            raise KhaltiServiceError(f"Payment {action} failed: {str(e)}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.ok:
            detail = body.get("detail") if isinstance(body, dict) else None
            logger.error(f"Khalti {action} rejected ({response.status_code}): {body or response.text}")
            raise KhaltiServiceError(f"Payment {action} failed: {detail or f'HTTP {response.status_code}'}")

        if not isinstance(body, dict):
            raise KhaltiServiceError(f"Payment {action} failed: malformed gateway response")
        return body

    def create_payment_request(
        self,
        booking_id: int,
        amount_in_paisa: int,
        purchase_order_id: str,
        product_name: str,
        customer_name: str,
        customer_email: str,
        customer_phone: Optional[str] = None,
        return_url: Optional[str] = None,
        website_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Build the initiation payload for Khalti

        Args:
            booking_id: Booking the payment settles
            amount_in_paisa: Amount in paisa
            purchase_order_id: Merchant reference
            product_name: Name shown on the hosted payment page
            customer_name: Customer name
            customer_email: Customer email
            customer_phone: Optional customer phone
            return_url: Redirect URL after payment
            website_url: Merchant website URL

        Returns:
            Dictionary with the initiation payload
        """
        return {
            "return_url": return_url or settings.khalti_return_url,
            "website_url": website_url or settings.BASE_URL,
            "amount": amount_in_paisa,
            "purchase_order_id": purchase_order_id,
            "purchase_order_name": product_name,
            "customer_info": {
                "name": customer_name,
                "email": customer_email,
                "phone": customer_phone or "",
            },
            "product_details": [{
                "identity": str(booking_id),
                "name": product_name,
                "total_price": amount_in_paisa,
                "quantity": 1,
                "unit_price": amount_in_paisa,
            }],
        }

    def initiate_payment(self, payment_request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Initiate a payment with Khalti

        Returns:
            Dictionary with pidx, payment_url, expires_at and expires_in
        """
        logger.info(f"Initiating Khalti payment for order {payment_request.get('purchase_order_id')}")
        body = self._post("initiate", payment_request, "initiation")
        if not body.get("pidx") or not body.get("payment_url"):
            raise KhaltiServiceError("Payment initiation failed: gateway response is missing pidx or payment_url")
        return body

    def lookup_payment(self, pidx: str) -> Dict[str, Any]:
        """
        Look up the gateway status of a payment

        Returns:
            Dictionary with pidx, total_amount, status, transaction_id and fee details
        """
        logger.debug(f"Looking up Khalti payment {pidx}")
        return self._post("lookup", {"pidx": pidx}, "lookup")

    def verify_webhook(self, data: str, signature: Optional[str]) -> bool:
        """Check an HMAC-SHA256 webhook signature over the raw body"""
        if not signature or not self.secret_key:
            return False
        try:
            digest = hmac.new(
                self.secret_key.encode("utf-8"),
                data.encode("utf-8"),
                hashlib.sha256
            ).hexdigest()
            return hmac.compare_digest(digest, signature)
        except (TypeError, ValueError) as e:
            logger.error(f"Webhook verification failed: {str(e)}")
            return False

    @staticmethod
    def generate_payment_reference() -> str:
        suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(9))
        return f"REART-{int(time.time() * 1000)}-{suffix}"

    @staticmethod
    def npr_to_paisa(amount: float) -> int:
        return int(round(amount * 100))

    @staticmethod
    def paisa_to_npr(amount: int) -> float:
        return amount / 100

    @staticmethod
    def format_amount(amount: float, in_paisa: bool = False) -> str:
        return format_npr(amount, in_paisa=in_paisa)

    @staticmethod
    def map_gateway_status(gateway_status: Optional[str]) -> Optional[str]:
        """Map a Khalti lookup status to a payment status, None when it carries no transition"""
        return GATEWAY_STATUS_MAP.get(gateway_status or "")


_khalti_service: Optional[KhaltiService] = None


def get_khalti_service() -> KhaltiService:
    """Dependency returning the shared Khalti service instance"""
    global _khalti_service
    if _khalti_service is None:
        _khalti_service = KhaltiService()
    return _khalti_service
