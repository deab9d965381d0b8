"""
Phone number login with one-time codes.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.security import generate_otp_code, hash_otp_code, verify_otp_code
from app.models.user import User, OtpCode

logger = logging.getLogger(__name__)


def request_otp(db: Session, phone_number: str, sender) -> OtpCode:
    """Create a fresh code for the phone number and text it."""
    code = generate_otp_code()
    # Older codes stop working once a new one is issued
    db.query(OtpCode).filter(
        OtpCode.phone_number == phone_number,
        OtpCode.consumed.is_(False)
    ).update({OtpCode.consumed: True}, synchronize_session=False)
    otp = OtpCode(
        phone_number=phone_number,
        code_hash=hash_otp_code(code),
        expires_at=datetime.utcnow() + timedelta(seconds=settings.OTP_EXPIRE_SECONDS),
    )
    db.add(otp)
    db.commit()
    sender.send(phone_number, f"Your Community Capital code is: {code}")
    return otp


def verify_otp(db: Session, phone_number: str, code: str) -> Optional[User]:
    """
    Consume a valid code and return the (possibly new) user.
    Returns None when the code is wrong or expired.
    """
    otp = db.query(OtpCode).filter(
        OtpCode.phone_number == phone_number,
        OtpCode.consumed.is_(False),
        OtpCode.expires_at > datetime.utcnow()
    ).order_by(OtpCode.id.desc()).first()
    if not otp or not verify_otp_code(code, otp.code_hash):
        return None

    otp.consumed = True
    user = db.query(User).filter(User.phone_number == phone_number).first()
    if not user:
        user = User(phone_number=phone_number)
        db.add(user)
        logger.info(f"Created user for phone ***{phone_number[-4:]}")
    db.commit()
    db.refresh(user)
    return user
