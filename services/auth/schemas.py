from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional
from datetime import datetime
from shared.security_config import validate_password_strength, sanitize_input, PASSWORD_RULE

class UserRegister(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)

    @field_validator('password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError(PASSWORD_RULE)
        return v

    @field_validator('name')
    def sanitize_name(cls, v):
        return sanitize_input(v)

class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)

class OtpVerify(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)

class EmailRequest(BaseModel):
    email: EmailStr

class PasswordReset(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)
    new_password: str = Field(..., min_length=6)
    confirm_password: str = Field(..., min_length=6)

    @field_validator('new_password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError(PASSWORD_RULE)
        return v

class UserResponse(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: str
    is_admin: bool
    is_email_verified: bool
    phone: Optional[str] = ""
    avatar_url: Optional[str] = ""
    created_at: Optional[datetime] = None

class Token(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserResponse

class RegisterResponse(BaseModel):
    email: EmailStr
