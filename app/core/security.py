"""
Admin session tokens and password hashing
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings
from app.core.logging_config import logger

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ALGORITHM = "HS256"


@dataclass(frozen=True)
class AuthContext:
    """Caller identity resolved from a validated bearer token"""

    subject: str
    is_admin: bool
    token: str

    @property
    def authorization_header(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a plain password against a hashed password"""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password with pbkdf2_sha256"""
    return pwd_context.hash(password)


def create_access_token(
    subject: str,
    is_admin: bool = False,
    expires_delta: Optional[timedelta] = None
) -> tuple:
    """
    Create a signed JWT access token

    Args:
        subject: Token subject (username)
        is_admin: Whether the subject holds admin privileges
        expires_delta: Optional lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Tuple of (encoded token, expiry datetime)
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": subject, "admin": is_admin, "exp": expire}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt, expire


def decode_access_token(token: str) -> Optional[AuthContext]:
    """Decode and validate a JWT access token, returning None when invalid"""
    try:
        decoded_token = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected access token: {str(e)}")
        return None

    subject = decoded_token.get("sub")
    if not subject:
        return None
    return AuthContext(
        subject=subject,
        is_admin=bool(decoded_token.get("admin", False)),
        token=token
    )
