"""
Client for the payment REST API
Used by the checkout flow to start payments and by the status poller to
watch a payment settle
"""
import asyncio
import threading
from typing import Any, Dict, Optional, Union

import requests
from pydantic import ValidationError

from app.core.config import settings
from app.core.logging_config import logger
from app.core.security import AuthContext
from app.schemas.payment import (
    CustomerInfo,
    PaymentInitiateRequest,
    PaymentInitiation,
    PaymentRecord,
)

DEFAULT_INITIATION_ERROR = "Payment initiation failed"


class PaymentInitiationError(Exception):
    """Starting a payment failed; the message is safe to show to the user"""

    def __init__(self, message: str = DEFAULT_INITIATION_ERROR, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class PaymentStatusQueryError(Exception):
    """A status query did not produce a payment projection"""


def _error_message(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("message"), str) and body["message"]:
        return body["message"]
    return None


class PaymentApiClient:
    """Thin wrapper over the payment endpoints of the REST backend"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth: Optional[AuthContext] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.auth = auth
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth is not None:
            headers.update(self.auth.authorization_header)
        return headers

    def initiate_payment(self, payload: PaymentInitiateRequest) -> PaymentInitiation:
        """
        POST /api/payment/initiate

        Raises:
            PaymentInitiationError: On network errors, non-2xx answers or malformed bodies
        """
        url = f"{self.base_url}/api/payment/initiate"
        try:
            response = self.session.post(
                url,
                json=payload.model_dump(by_alias=True, exclude_none=True),
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Payment initiation request failed: {str(e)}")
            raise PaymentInitiationError() from e

        if not response.ok:
            message = _error_message(response) or DEFAULT_INITIATION_ERROR
            logger.warning(f"Payment initiation rejected ({response.status_code}): {message}")
            raise PaymentInitiationError(message, status_code=response.status_code)

        try:
            return PaymentInitiation.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Malformed payment initiation response: {str(e)}")
            raise PaymentInitiationError() from e

    def get_payment_status(self, identifier: Union[int, str]) -> PaymentRecord:
        """
        GET /api/payment/status/{identifier}

        Raises:
            PaymentStatusQueryError: On network errors, non-2xx answers or malformed bodies
        """
        url = f"{self.base_url}/api/payment/status/{identifier}"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise PaymentStatusQueryError(f"Status query for {identifier} failed: {str(e)}") from e

        if not response.ok:
            raise PaymentStatusQueryError(
                f"Status query for {identifier} returned {response.status_code}: {_error_message(response)}"
            )

        try:
            return PaymentRecord.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PaymentStatusQueryError(f"Malformed status response for {identifier}: {str(e)}") from e

    async def fetch_payment_status(self, identifier: Union[int, str]) -> PaymentRecord:
        """Run get_payment_status off the event loop; cancelling the awaiting task discards the result"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.get_payment_status, identifier)

    def close(self) -> None:
        self.session.close()


class PaymentGatewayClient:
    """
    Starts a payment for a booking and hands back the gateway URL to redirect to

    Only one initiation may be outstanding per instance; `is_busy` lets the
    caller disable its trigger while a request is in flight.
    """

    def __init__(self, api: Optional[PaymentApiClient] = None):
        self.api = api or PaymentApiClient()
        self._lock = threading.Lock()
        self.local_status: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_initiation: Optional[PaymentInitiation] = None

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def initiate(
        self,
        booking_id: int,
        amount: float,
        product_name: str,
        customer_info: Optional[Union[CustomerInfo, Dict[str, Any]]] = None
    ) -> PaymentInitiation:
        """
        Start a payment

        Args:
            booking_id: Booking being paid for
            amount: Amount in NPR
            product_name: Name shown on the hosted payment page
            customer_info: Customer name, email and phone

        Returns:
            PaymentInitiation whose payment_url the browser must be sent to

        Raises:
            PaymentInitiationError: If the request fails or another one is outstanding
        """
        if not self._lock.acquire(blocking=False):
            raise PaymentInitiationError("A payment request is already in progress")

        try:
            # Local approximation only: the backend has not confirmed anything yet
            self.local_status = "pending"
            self.last_error = None
            if isinstance(customer_info, dict):
                customer_info = CustomerInfo.model_validate(customer_info)

            payload = PaymentInitiateRequest(
                booking_id=booking_id,
                amount=amount,
                product_name=product_name,
                customer_info=customer_info
            )
            try:
                initiation = self.api.initiate_payment(payload)
            except PaymentInitiationError as e:
                self.local_status = "failed"
                self.last_error = e.message
                raise

            self.last_initiation = initiation
            logger.info(
                f"Payment {initiation.payment_id} initiated for booking {booking_id}, redirecting to gateway"
            )
            return initiation
        finally:
            self._lock.release()
