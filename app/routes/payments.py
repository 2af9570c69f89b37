"""
Payment routes for Khalti integration
"""
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.payment import (
    PaymentInitiateRequest,
    PaymentInitiation,
    PaymentRecord,
    WebhookPayload,
)
from app.services.khalti_service import KhaltiService, KhaltiServiceError, get_khalti_service
from app.services.payment_service import payment_service, ActivePaymentExists, InvalidStatusTransition
from app.core.logging_config import logger

router = APIRouter(tags=["payments"])


def _return_redirect(**params) -> RedirectResponse:
    """Redirect to the return-flow page with the given query parameters"""
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(url=f"/payment/status?{query}", status_code=status.HTTP_303_SEE_OTHER)


@router.post("/api/payment/initiate", response_model=PaymentInitiation)
def initiate_payment(
    payload: PaymentInitiateRequest,
    db: Session = Depends(get_db),
    khalti: KhaltiService = Depends(get_khalti_service)
):
    """
    Start a Khalti payment for a booking

    Args:
        payload: Booking ID, amount in NPR, product name and customer info
        db: Database session
        khalti: Khalti gateway service

    Returns:
        Payment ID, gateway URL, pidx and amount details
    """
    if not khalti.is_configured:
        logger.error("Khalti service not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service not configured"
        )

    if not payload.booking_id or not payload.amount or not payload.product_name or not payload.customer_info:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Booking ID, amount, product name, and customer info are required"
        )
    if payload.amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Amount must be greater than zero"
        )
    customer = payload.customer_info
    if not customer.name or not customer.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Customer name and email are required"
        )

    active = payment_service.get_active_payment_for_booking(db, payload.booking_id)
    if active:
        logger.warning(f"Booking {payload.booking_id} already has active payment {active.id} ({active.status})")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This booking already has an active payment"
        )

    purchase_order_id = khalti.generate_payment_reference()
    amount_in_paisa = khalti.npr_to_paisa(payload.amount)
    payment_request = khalti.create_payment_request(
        booking_id=payload.booking_id,
        amount_in_paisa=amount_in_paisa,
        purchase_order_id=purchase_order_id,
        product_name=payload.product_name,
        customer_name=customer.name,
        customer_email=customer.email,
        customer_phone=customer.phone
    )

    try:
        gateway_response = khalti.initiate_payment(payment_request)
    except KhaltiServiceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    try:
        payment = payment_service.create_payment(
            db,
            booking_id=payload.booking_id,
            pidx=gateway_response["pidx"],
            amount_in_paisa=amount_in_paisa,
            purchase_order_id=purchase_order_id,
            product_name=payload.product_name,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            gateway_response=gateway_response
        )
    except ActivePaymentExists:
        # Lost the race against a concurrent checkout for the same booking
        logger.warning(f"Discarding gateway payment {gateway_response['pidx']} for booking {payload.booking_id}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This booking already has an active payment"
        )

    return PaymentInitiation(
        payment_id=payment.id,
        payment_url=gateway_response["payment_url"],
        pidx=payment.pidx,
        expires_at=gateway_response.get("expires_at"),
        amount=khalti.format_amount(payload.amount),
        amount_in_paisa=amount_in_paisa
    )


@router.get("/api/payment/status/{identifier}", response_model=PaymentRecord)
def get_payment_status(
    identifier: str,
    db: Session = Depends(get_db),
    khalti: KhaltiService = Depends(get_khalti_service)
):
    """
    Current projection of a payment, by numeric ID or pidx

    Non-terminal payments are re-checked with Khalti first; a failed lookup
    still serves the stored projection.
    """
    payment = payment_service.get_payment_by_identifier(db, identifier)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    if not payment.is_terminal and khalti.is_configured:
        try:
            lookup = khalti.lookup_payment(payment.pidx)
            new_status = khalti.map_gateway_status(lookup.get("status"))
            payment_service.update_status(
                db,
                payment,
                new_status or payment.status,
                transaction_id=lookup.get("transaction_id")
            )
        except KhaltiServiceError as e:
            logger.warning(f"Status re-check for payment {payment.id} failed: {str(e)}")
        except InvalidStatusTransition as e:
            logger.warning(str(e))

    return PaymentRecord.model_validate(payment)


@router.get("/payment/callback")
def payment_callback(
    pidx: Optional[str] = None,
    db: Session = Depends(get_db),
    khalti: KhaltiService = Depends(get_khalti_service)
):
    """
    Handle the redirect back from Khalti's hosted payment page

    Returns:
        Redirect to the return-flow page
    """
    if not pidx:
        return _return_redirect(payment="failed", error="missing_pidx")
    if not khalti.is_configured:
        return _return_redirect(payment="failed", error="service_unavailable")

    try:
        lookup = khalti.lookup_payment(pidx)

        payment = payment_service.get_payment_by_pidx(db, pidx)
        if not payment:
            logger.error(f"Payment not found for pidx {pidx}")
            return _return_redirect(payment="failed", error="payment_not_found")

        gateway_status = lookup.get("status")
        new_status = khalti.map_gateway_status(gateway_status)

        if new_status == "completed":
            payment_service.update_status(db, payment, new_status, transaction_id=lookup.get("transaction_id"))
            logger.info(f"Payment successful for booking {payment.booking_id}, pidx {pidx}")
            return _return_redirect(payment="success", booking=payment.booking_id)

        if new_status == "failed":
            payment_service.update_status(db, payment, new_status)
            error = "payment_expired" if gateway_status == "Expired" else "user_canceled"
            logger.warning(f"Payment {payment.id} failed at gateway: {gateway_status}")
            return _return_redirect(payment="failed", booking=payment.booking_id, error=error)

        if new_status == "pending":
            payment_service.update_status(db, payment, new_status)
        return _return_redirect(payment="pending", booking=payment.booking_id)

    except (KhaltiServiceError, InvalidStatusTransition) as e:
        logger.error(f"Error processing payment callback: {str(e)}", exc_info=True)
        db.rollback()
        return _return_redirect(payment="failed", error="callback_failed")


@router.post("/api/payment/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    khalti: KhaltiService = Depends(get_khalti_service)
):
    """
    Gateway webhook; the raw body must carry a valid X-Khalti-Signature
    """
    raw_body = (await request.body()).decode("utf-8")
    if not khalti.verify_webhook(raw_body, request.headers.get("X-Khalti-Signature")):
        logger.warning("Rejected payment webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        event = WebhookPayload.model_validate_json(raw_body)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload")

    payment = payment_service.get_payment_by_pidx(db, event.pidx)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    new_status = khalti.map_gateway_status(event.status)
    if new_status:
        try:
            payment_service.update_status(db, payment, new_status, transaction_id=event.transaction_id)
        except InvalidStatusTransition as e:
            logger.warning(str(e))

    return {"received": True, "status": payment.status}
