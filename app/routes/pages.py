"""
Customer-facing payment pages
"""
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging_config import logger
from app.core.templates import templates
from app.db.session import get_db
from app.schemas.payment import CustomerInfo, PaymentRecord
from app.services.payment_client import PaymentGatewayClient, PaymentInitiationError
from app.services.payment_service import payment_service
from app.services.return_flow import parse_return_params
from app.utils.payment_display import present_payment

router = APIRouter(tags=["pages"])


def get_gateway_client() -> PaymentGatewayClient:
    return PaymentGatewayClient()


@router.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Home page with the checkout form"""
    return templates.TemplateResponse(
        request,
        "index.html",
        {"app_name": settings.APP_NAME, "error": None, "form": {}}
    )


@router.post("/payments/checkout")
def checkout(
    request: Request,
    booking_id: int = Form(...),
    amount: float = Form(...),
    product_name: str = Form(...),
    customer_name: str = Form(...),
    customer_email: str = Form(...),
    customer_phone: Optional[str] = Form(None),
    gateway: PaymentGatewayClient = Depends(get_gateway_client)
):
    """
    Start a payment and send the browser to Khalti's hosted page

    On failure the form is shown again with the error so the user can retry.
    """
    try:
        initiation = gateway.initiate(
            booking_id=booking_id,
            amount=amount,
            product_name=product_name,
            customer_info=CustomerInfo(name=customer_name, email=customer_email, phone=customer_phone)
        )
    except PaymentInitiationError as e:
        logger.warning(f"Checkout failed for booking {booking_id}: {e.message}")
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "app_name": settings.APP_NAME,
                "error": e.message,
                "form": {
                    "booking_id": booking_id,
                    "amount": amount,
                    "product_name": product_name,
                    "customer_name": customer_name,
                    "customer_email": customer_email,
                    "customer_phone": customer_phone or "",
                },
            },
            status_code=e.status_code or status.HTTP_502_BAD_GATEWAY
        )

    return RedirectResponse(url=initiation.payment_url, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/payment/status", response_class=HTMLResponse)
async def payment_return(request: Request):
    """Page Khalti's return flow lands on; reads payment, booking and error"""
    outcome = parse_return_params(request.query_params)
    return templates.TemplateResponse(
        request,
        "payments/status.html",
        {
            "outcome": outcome,
            "actions": outcome.actions(str(request.url)),
        }
    )


@router.get("/payment/track/{identifier}", response_class=HTMLResponse)
async def payment_tracker(request: Request, identifier: str, db: Session = Depends(get_db)):
    """Tracker page; live updates arrive over /ws/payments/{identifier}"""
    payment = payment_service.get_payment_by_identifier(db, identifier)
    snapshot = present_payment(PaymentRecord.model_validate(payment)) if payment else None
    return templates.TemplateResponse(
        request,
        "payments/tracker.html",
        {
            "identifier": identifier,
            "payment": snapshot,
            "poll_interval": settings.PAYMENT_POLL_INTERVAL,
        },
        status_code=status.HTTP_200_OK if payment else status.HTTP_404_NOT_FOUND
    )
