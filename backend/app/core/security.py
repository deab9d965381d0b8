"""
Security utilities for JWT authentication and one-time code hashing.
"""
from datetime import datetime, timedelta
from typing import Optional
import secrets
import bcrypt
from jose import JWTError, jwt
from app.core.config import settings


def generate_otp_code(length: int = 6) -> str:
    """Generate a numeric one-time code."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_otp_code(code: str) -> str:
    """Hash a one-time code for storage."""
    hashed = bcrypt.hashpw(code.encode('utf-8'), bcrypt.gensalt())
    return hashed.decode('utf-8')


def verify_otp_code(code: str, hashed_code: str) -> bool:
    """Verify a one-time code against its hash."""
    return bcrypt.checkpw(code.encode('utf-8'), hashed_code.encode('utf-8'))


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        return None
