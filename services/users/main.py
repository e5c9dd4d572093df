from fastapi import APIRouter, Depends, HTTPException, Request
from typing import List
import logging

from shared.utils import (
    get_db, get_current_user, require_admin, get_password_hash, verify_password,
    str_to_oid, to_safe_user, SuccessResponse, NotFoundException, ForbiddenException,
)
from shared.mailer import send_otp_email
from shared.security_config import is_image_data_url, estimate_data_url_bytes, MAX_AVATAR_BYTES

from services.auth.schemas import UserResponse
from services.auth.otp import generate_otp, hash_otp, otp_expiry
from services.users.schemas import ProfileUpdate, AdminUserUpdate, PasswordChange, RoleUpdate, SessionResponse

logger = logging.getLogger("inventory-api.users")

router = APIRouter(prefix="/users", tags=["users"])

async def find_user(db, user_id: str) -> dict:
    user = await db.users.find_one({"_id": str_to_oid(user_id, "User not found")})
    if not user:
        raise NotFoundException("User not found")
    return user

def check_avatar_size(avatar_url: str):
    if is_image_data_url(avatar_url) and estimate_data_url_bytes(avatar_url) > MAX_AVATAR_BYTES:
        raise HTTPException(status_code=400, detail="Avatar image must be less than 2MB")

async def ensure_email_free(db, email: str, user: dict):
    existing = await db.users.find_one({"email": email})
    if existing and existing["_id"] != user["_id"]:
        raise HTTPException(status_code=400, detail="Email already in use")

def profile_changes(update: ProfileUpdate) -> dict:
    changes = {}
    if update.name is not None:
        changes["name"] = update.name
    if update.phone is not None:
        changes["phone"] = update.phone
    if update.avatar_url is not None:
        check_avatar_size(update.avatar_url)
        changes["avatar_url"] = update.avatar_url
    return changes

# --- "Me" endpoints ---

@router.get("/me", response_model=SuccessResponse[UserResponse])
async def get_profile(user: dict = Depends(get_current_user)):
    return SuccessResponse(data=UserResponse(**to_safe_user(user)))

@router.put("/me", response_model=SuccessResponse[UserResponse])
async def update_me(profile_update: ProfileUpdate, request: Request, user: dict = Depends(get_current_user), db=Depends(get_db)):
    changes = profile_changes(profile_update)

    next_email = profile_update.email.lower() if profile_update.email else None
    email_changed = bool(next_email) and next_email != user["email"]
    otp = None
    if email_changed:
        await ensure_email_free(db, next_email, user)
        otp = generate_otp()
        changes.update({
            "email": next_email,
            "is_email_verified": False,
            "otp_hash": hash_otp(otp),
            "otp_expires_at": otp_expiry(request.app.state.settings.OTP_EXPIRE_MINUTES),
        })

    if changes:
        await db.users.update_one({"_id": user["_id"]}, {"$set": changes})
    if otp:
        await send_otp_email(request.app.state.settings, next_email, otp)

    updated = await db.users.find_one({"_id": user["_id"]})
    message = "Profile updated. Verification code sent to your new email." if email_changed else "Profile updated."
    return SuccessResponse(data=UserResponse(**to_safe_user(updated)), message=message)

@router.patch("/me/password", response_model=SuccessResponse[dict])
async def change_my_password(body: PasswordChange, user: dict = Depends(get_current_user), db=Depends(get_db)):
    if body.new_password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")

    if not verify_password(body.old_password, user["password_hash"]):
        raise HTTPException(status_code=400, detail="Old password is incorrect")

    await db.users.update_one({"_id": user["_id"]}, {"$set": {"password_hash": get_password_hash(body.new_password)}})
    return SuccessResponse(message="Password changed successfully")

# --- Admin endpoints ---

@router.get("", response_model=SuccessResponse[List[UserResponse]])
async def list_users(admin: dict = Depends(require_admin), db=Depends(get_db)):
    cursor = db.users.find({}).sort("created_at", -1)
    users = []
    async for doc in cursor:
        users.append(UserResponse(**to_safe_user(doc)))
    return SuccessResponse(data=users)

@router.get("/{user_id}", response_model=SuccessResponse[UserResponse])
async def get_user_by_id(user_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)
    return SuccessResponse(data=UserResponse(**to_safe_user(user)))

@router.patch("/{user_id}", response_model=SuccessResponse[UserResponse])
async def admin_update_user(user_id: str, update: AdminUserUpdate, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)
    changes = profile_changes(update)

    if update.email:
        next_email = update.email.lower()
        if next_email != user["email"]:
            await ensure_email_free(db, next_email, user)
            changes["email"] = next_email
    if update.is_email_verified is not None:
        changes["is_email_verified"] = update.is_email_verified

    if changes:
        await db.users.update_one({"_id": user["_id"]}, {"$set": changes})
    updated = await db.users.find_one({"_id": user["_id"]})
    return SuccessResponse(data=UserResponse(**to_safe_user(updated)))

@router.patch("/{user_id}/role", response_model=SuccessResponse[UserResponse])
async def update_user_role(user_id: str, body: RoleUpdate, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)
    # role and is_admin always move together
    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"role": body.role, "is_admin": body.role == "admin"}}
    )
    logger.info("User role changed", extra={"event": "role_changed", "user_id": user_id})
    updated = await db.users.find_one({"_id": user["_id"]})
    return SuccessResponse(data=UserResponse(**to_safe_user(updated)))

@router.patch("/{user_id}/verify", response_model=SuccessResponse[UserResponse])
async def verify_user(user_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)
    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"is_email_verified": True, "otp_hash": None, "otp_expires_at": None}}
    )
    updated = await db.users.find_one({"_id": user["_id"]})
    return SuccessResponse(data=UserResponse(**to_safe_user(updated)))

@router.get("/{user_id}/sessions", response_model=SuccessResponse[List[SessionResponse]])
async def get_user_sessions(user_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)
    cursor = db.user_sessions.find({"user_id": str(user["_id"])}).sort("last_seen_at", -1)
    sessions = []
    async for doc in cursor:
        doc["id"] = str(doc["_id"])
        sessions.append(SessionResponse(**doc))
    return SuccessResponse(data=sessions)

@router.delete("/{user_id}", response_model=SuccessResponse[dict])
async def delete_user(user_id: str, admin: dict = Depends(require_admin), db=Depends(get_db)):
    user = await find_user(db, user_id)

    if user.get("is_admin") and user["_id"] != admin["_id"]:
        raise ForbiddenException("Admins cannot delete other admins")

    await db.user_sessions.delete_many({"user_id": str(user["_id"])})
    await db.users.delete_one({"_id": user["_id"]})
    logger.info("User deleted", extra={"event": "user_deleted", "user_id": user_id})
    return SuccessResponse(message="User deleted")
