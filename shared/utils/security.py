"""
shared/utils/security.py
JWT verification and booking-link token helpers.
Access tokens are issued by the upstream identity service.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings

BOOKING_TOKEN_BYTES = 32  # 64 hex chars


# ── JWT ───────────────────────────────────────────────────────

def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload


# ── Booking Tokens ────────────────────────────────────────────

def generate_booking_token() -> str:
    """Unguessable 64-character hex token used in public booking links."""
    return secrets.token_hex(BOOKING_TOKEN_BYTES)


def get_token_expiry_date(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=settings.BOOKING_TOKEN_TTL_DAYS)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_token_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now > as_utc(expires_at)
