"""
Authentication routes for phone number login with one-time codes.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.schemas.user import PhoneNumberRequest, VerifyCodeRequest, Token
from app.core.security import create_access_token
from app.api.dependencies import get_sms_sender
from app.services.auth_service import request_otp, verify_otp
from app.services.sms_service import SmsDeliveryError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register")
async def register(
    request: PhoneNumberRequest,
    db: Session = Depends(get_db),
    sms_sender=Depends(get_sms_sender)
):
    """Send a login code to the phone number."""
    try:
        request_otp(db, request.phone_number, sms_sender)
    except SmsDeliveryError as e:
        logger.error(f"Could not send login code: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not send verification code"
        )
    return {"success": True, "message": "OTP sent successfully"}


@router.post("/verify", response_model=Token)
async def verify(request: VerifyCodeRequest, db: Session = Depends(get_db)):
    """Verify the login code and get a JWT token."""
    user = verify_otp(db, request.phone_number, request.code)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired OTP"
        )
    
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )
    
    access_token = create_access_token(data={"sub": user.phone_number, "user_id": user.id})
    
    return {"access_token": access_token, "token_type": "bearer", "user": user}
