from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field

class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: str
    email: EmailStr
    password_hash: str
    role: str = "user" # admin, user
    is_admin: bool = False
    is_email_verified: bool = False
    phone: str = ""
    avatar_url: str = ""
    otp_hash: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    reset_otp_hash: Optional[str] = None
    reset_otp_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

class UserSessionDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    ip_address: str = ""
    user_agent: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_seen_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
