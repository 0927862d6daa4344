from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Any
import hmac
import uuid

from jose import JWTError, jwt

from app.config import settings


class PrincipalRole(str, Enum):
    """Roles carried in the access token."""
    AFFILIATE = "AFFILIATE"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


def create_access_token(
    subject: str | uuid.UUID,
    role: PrincipalRole = PrincipalRole.AFFILIATE,
    vendor_id: Optional[uuid.UUID] = None,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[dict[str, Any]] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        subject: The subject of the token (user ID)
        role: Principal role (AFFILIATE, VENDOR, ADMIN)
        vendor_id: Vendor the principal acts for (VENDOR role)
        expires_delta: Optional custom expiration time
        additional_claims: Optional additional claims to include

    Returns:
        Encoded JWT token string
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "sub": str(subject),
        "role": PrincipalRole(role).value,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
        "type": "access"
    }
    if vendor_id:
        to_encode["vendor_id"] = str(vendor_id)

    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        return None


def verify_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify an access token and return its payload.

    Returns:
        Payload dict or None if invalid or not an access token
    """
    payload = decode_token(token)
    if payload is None:
        return None

    if payload.get("type") != "access":
        return None

    return payload


def verify_webhook_secret(provided: Optional[str], expected: str = settings.WEBHOOK_SECRET) -> bool:
    """Constant-time comparison of a shared webhook secret."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
