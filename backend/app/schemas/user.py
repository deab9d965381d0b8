"""
Pydantic schemas for User entity and phone login.
"""
from pydantic import BaseModel, EmailStr, field_validator
from typing import Optional
from datetime import datetime
from app.core.utils import normalize_phone_number


class PhoneNumberRequest(BaseModel):
    """Schema for requesting a login code."""
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v):
        return normalize_phone_number(v)


class VerifyCodeRequest(PhoneNumberRequest):
    """Schema for verifying a login code."""
    code: str


class UserUpdate(BaseModel):
    """Schema for user update."""
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class UserResponse(BaseModel):
    """Schema for user response."""
    id: int
    phone_number: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_active: bool
    created_at: datetime
    
    class Config:
        from_attributes = True


class Token(BaseModel):
    """Schema for JWT token response."""
    access_token: str
    token_type: str = "bearer"
    user: UserResponse
