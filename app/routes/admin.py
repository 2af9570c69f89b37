"""
Admin session and payment listing routes

Admin requests carry a server-issued bearer token that is validated on
every call; nothing is read from cookies or browser storage.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging_config import logger
from app.core.security import AuthContext, create_access_token, decode_access_token, verify_password
from app.db.session import get_db
from app.schemas.payment import AdminSessionRequest, AdminSessionResponse, PaymentRecord
from app.services.payment_service import payment_service

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"]
)


def require_admin(authorization: Optional[str] = Header(default=None)) -> AuthContext:
    """
    Dependency to require a valid admin bearer token

    Raises:
        HTTPException: 401 when the token is missing or invalid, 403 when it is not an admin token
    """
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    auth = decode_access_token(token)
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"}
        )
    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return auth


@router.post("/session", response_model=AdminSessionResponse)
async def create_session(credentials: AdminSessionRequest):
    """Exchange admin credentials for a bearer token"""
    if credentials.username != settings.ADMIN_USERNAME or not verify_password(
        credentials.password, settings.ADMIN_PASSWORD_HASH
    ):
        logger.warning(f"Failed admin login for {credentials.username}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password"
        )

    token, expires_at = create_access_token(credentials.username, is_admin=True)
    logger.info(f"Admin session issued for {credentials.username}")
    return AdminSessionResponse(access_token=token, expires_at=expires_at)


@router.get("/payments", response_model=List[PaymentRecord])
async def list_payments(
    skip: int = 0,
    limit: int = 100,
    auth: AuthContext = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """All payments, newest first"""
    limit = min(max(1, limit), 500)
    payments = payment_service.list_payments(db, skip=skip, limit=limit)
    logger.debug(f"{auth.subject} listed {len(payments)} payments")
    return [PaymentRecord.model_validate(p) for p in payments]
