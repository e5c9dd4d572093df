from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional
from datetime import datetime
from shared.security_config import (
    sanitize_input, validate_password_strength, PASSWORD_RULE,
    HTTP_URL_PATTERN, AVATAR_DATA_PATTERN,
)

ALLOWED_ROLES = ("admin", "user")

def check_avatar(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if v and not (HTTP_URL_PATTERN.match(v) or AVATAR_DATA_PATTERN.match(v)):
        raise ValueError("avatar_url must be an http(s) URL or a base64 image data URL")
    return v

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator('name', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('avatar_url')
    def avatar_ref(cls, v):
        return check_avatar(v)

class AdminUserUpdate(ProfileUpdate):
    is_email_verified: Optional[bool] = None

class PasswordChange(BaseModel):
    old_password: str = Field(..., min_length=6)
    new_password: str = Field(..., min_length=6)
    confirm_password: str = Field(..., min_length=6)

    @field_validator('new_password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError(PASSWORD_RULE)
        return v

class RoleUpdate(BaseModel):
    role: str

    @field_validator('role')
    def allowed_role(cls, v):
        if v not in ALLOWED_ROLES:
            raise ValueError("Invalid role")
        return v

class SessionResponse(BaseModel):
    id: str
    user_id: str
    ip_address: str
    user_agent: str
    is_active: bool
    created_at: datetime
    last_seen_at: datetime
