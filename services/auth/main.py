from fastapi import APIRouter, Depends, HTTPException, status, Request, Header
from datetime import datetime
from typing import Optional
import logging
from bson import ObjectId
from jose import JWTError, jwt

from shared.utils import (
    get_db, get_password_hash, verify_password, create_access_token, bearer_token,
    SuccessResponse, NotFoundException, UnauthorizedException, ForbiddenException,
    to_safe_user,
)
from shared.mailer import send_otp_email
from shared.security_config import limiter

from services.auth.schemas import (
    UserRegister, UserLogin, OtpVerify, EmailRequest, PasswordReset,
    Token, UserResponse, RegisterResponse,
)
from services.auth.models import UserDB, UserSessionDB
from services.auth.otp import generate_otp, hash_otp, otp_expiry, check_otp

logger = logging.getLogger("inventory-api.auth")

router = APIRouter(prefix="/auth", tags=["auth"])

OTP_MESSAGES = {
    "missing": "OTP not found. Please request a new code.",
    "expired": "OTP expired. Please request a new code.",
    "invalid": "Invalid OTP",
}
RESET_MESSAGES = {
    "missing": "Reset code not found. Please request a new code.",
    "expired": "Reset code expired. Please request a new code.",
    "invalid": "Invalid reset code",
}

def normalize_email(email: str) -> str:
    return str(email or "").strip().lower()

async def open_session(request: Request, db, user: dict) -> str:
    """Record a login session and return a token bound to it."""
    session_db = UserSessionDB(
        user_id=str(user["_id"]),
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("user-agent", ""),
    )
    new_session = await db.user_sessions.insert_one(session_db.dict(by_alias=True, exclude={"id"}))
    return create_access_token(
        data={"sub": str(user["_id"]), "sid": str(new_session.inserted_id), "role": user["role"]},
        settings=request.app.state.settings,
    )

async def issue_otp(request: Request, db, user: dict, hash_field: str, expiry_field: str):
    settings = request.app.state.settings
    otp = generate_otp()
    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {hash_field: hash_otp(otp), expiry_field: otp_expiry(settings.OTP_EXPIRE_MINUTES)}}
    )
    await send_otp_email(settings, user["email"], otp)

# --- Endpoints ---

@router.post("/register", response_model=SuccessResponse[RegisterResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def register(user: UserRegister, request: Request, db=Depends(get_db)):
    email = normalize_email(user.email)
    existing_user = await db.users.find_one({"email": email})
    if existing_user:
        raise HTTPException(status_code=400, detail="User already exists")

    # The very first account bootstraps the admin role
    is_first_user = await db.users.count_documents({}) == 0
    user_db = UserDB(
        name=user.name,
        email=email,
        password_hash=get_password_hash(user.password),
        role="admin" if is_first_user else "user",
        is_admin=is_first_user,
    )
    new_user = await db.users.insert_one(user_db.dict(by_alias=True, exclude={"id"}))
    created_user = await db.users.find_one({"_id": new_user.inserted_id})

    await issue_otp(request, db, created_user, "otp_hash", "otp_expires_at")
    logger.info("User registered", extra={"event": "user_registered", "user_id": str(new_user.inserted_id)})

    return SuccessResponse(data=RegisterResponse(email=email), message="Verification code sent to your email.")

@router.post("/login", response_model=SuccessResponse[Token])
@limiter.limit("5/minute")
async def login(user_credentials: UserLogin, request: Request, db=Depends(get_db)):
    user = await db.users.find_one({"email": normalize_email(user_credentials.email)})
    if not user or not verify_password(user_credentials.password, user["password_hash"]):
        raise UnauthorizedException("Invalid credentials")

    if not user.get("is_email_verified"):
        raise ForbiddenException("Email not verified")

    token = await open_session(request, db, user)
    return SuccessResponse(data=Token(token=token, user=UserResponse(**to_safe_user(user))))

@router.post("/verify-otp", response_model=SuccessResponse[Token])
@limiter.limit("10/minute")
async def verify_otp(body: OtpVerify, request: Request, db=Depends(get_db)):
    user = await db.users.find_one({"email": normalize_email(body.email)})
    if not user:
        raise NotFoundException("User not found")

    if user.get("is_email_verified"):
        raise HTTPException(status_code=400, detail="Email already verified")

    problem = check_otp(body.otp, user.get("otp_hash"), user.get("otp_expires_at"))
    if problem:
        raise HTTPException(status_code=400, detail=OTP_MESSAGES[problem])

    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"is_email_verified": True, "otp_hash": None, "otp_expires_at": None}}
    )
    user = await db.users.find_one({"_id": user["_id"]})

    token = await open_session(request, db, user)
    return SuccessResponse(data=Token(token=token, user=UserResponse(**to_safe_user(user))))

@router.post("/resend-otp", response_model=SuccessResponse[dict])
@limiter.limit("5/minute")
async def resend_otp(body: EmailRequest, request: Request, db=Depends(get_db)):
    user = await db.users.find_one({"email": normalize_email(body.email)})
    if not user:
        raise NotFoundException("User not found")

    if user.get("is_email_verified"):
        raise HTTPException(status_code=400, detail="Email already verified")

    await issue_otp(request, db, user, "otp_hash", "otp_expires_at")
    return SuccessResponse(message="Verification code resent.")

@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(request: Request, authorization: Optional[str] = Header(None), db=Depends(get_db)):
    # Best effort: a missing or unreadable token still logs the client out
    token = bearer_token(authorization)
    if token:
        settings = request.app.state.settings
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            payload = {}
        session_id = payload.get("sid")
        if session_id and ObjectId.is_valid(session_id):
            await db.user_sessions.update_one(
                {"_id": ObjectId(session_id)},
                {"$set": {"is_active": False, "last_seen_at": datetime.utcnow()}}
            )

    return SuccessResponse(message="Logged out successfully")

@router.post("/request-password-reset", response_model=SuccessResponse[dict])
@limiter.limit("5/minute")
async def request_password_reset(body: EmailRequest, request: Request, db=Depends(get_db)):
    user = await db.users.find_one({"email": normalize_email(body.email)})
    if not user:
        # Same answer either way so registered emails cannot be probed
        return SuccessResponse(message="If the account exists, a reset code has been sent.")

    await issue_otp(request, db, user, "reset_otp_hash", "reset_otp_expires_at")
    return SuccessResponse(message="Password reset code sent to your email.")

@router.post("/verify-reset-otp", response_model=SuccessResponse[dict])
@limiter.limit("10/minute")
async def verify_reset_otp(body: OtpVerify, request: Request, db=Depends(get_db)):
    user = await db.users.find_one({"email": normalize_email(body.email)})
    if not user:
        raise NotFoundException("User not found")

    problem = check_otp(body.otp, user.get("reset_otp_hash"), user.get("reset_otp_expires_at"))
    if problem:
        raise HTTPException(status_code=400, detail=RESET_MESSAGES[problem])

    return SuccessResponse(message="Reset code verified.")

@router.post("/reset-password", response_model=SuccessResponse[dict])
@limiter.limit("5/minute")
async def reset_password(body: PasswordReset, request: Request, db=Depends(get_db)):
    if body.new_password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")

    user = await db.users.find_one({"email": normalize_email(body.email)})
    if not user:
        raise NotFoundException("User not found")

    problem = check_otp(body.otp, user.get("reset_otp_hash"), user.get("reset_otp_expires_at"))
    if problem:
        raise HTTPException(status_code=400, detail=RESET_MESSAGES[problem])

    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_hash": get_password_hash(body.new_password),
            "reset_otp_hash": None,
            "reset_otp_expires_at": None,
        }}
    )
    return SuccessResponse(message="Password reset successfully")
