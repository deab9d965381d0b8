"""
Shared FastAPI dependencies.
"""
import logging
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.rate_limit import SlidingWindowRateLimiter
from app.core.security import decode_access_token
from app.db.session import get_db
from app.models.user import User
from app.services.bank_link_service import PlaidClient
from app.services.notifier import notifier
from app.services.sms_service import get_sms_sender as build_sms_sender

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a JWT to an active user, or None."""
    payload = decode_access_token(token)
    if not payload or "user_id" not in payload:
        return None
    user = db.query(User).filter(User.id == payload["user_id"]).first()
    if not user or not user.is_active:
        return None
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get the authenticated user from the bearer token."""
    user = get_user_from_token(credentials.credentials, db)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_payment_worker(request: Request):
    """The worker created at application startup."""
    return request.app.state.payment_worker


def get_bank_link_provider():
    return PlaidClient()


def get_sms_sender():
    return build_sms_sender()


def get_notifier():
    return notifier


_payment_rate_limiter = SlidingWindowRateLimiter(
    max_requests=settings.PAYMENT_RATE_LIMIT,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
)


def get_payment_rate_limiter() -> SlidingWindowRateLimiter:
    return _payment_rate_limiter


async def limit_failed_payment_requests(
    current_user: User = Depends(get_current_user),
    limiter: SlidingWindowRateLimiter = Depends(get_payment_rate_limiter)
):
    """
    Reject payment requests from a user with too many recent failures.

    Only requests that end in an error count towards the limit.
    """
    key = f"user:{current_user.id}"
    if not limiter.is_allowed(key):
        logger.warning(f"Payment rate limit exceeded for user {current_user.id}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, please try again later",
            headers={"Retry-After": str(limiter.retry_after(key))},
        )
    try:
        yield
    except Exception:
        limiter.record(key)
        raise
