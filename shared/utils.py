from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header, Request, Depends
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
from bson import ObjectId

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGO_DB: str = "inventory_db"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_DAYS: int = 30
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    API_PORT: int = 8000

    FRONTEND_URL: str = "http://localhost:5173"

    # Khalti
    KHALTI_BASE_URL: str = "https://a.khalti.com/api/v2"
    KHALTI_SECRET_KEY: Optional[str] = None
    KHALTI_TIMEOUT: float = 10.0
    PAYMENT_INITIATED_TTL_DAYS: int = 7

    # Email / OTP
    OTP_EXPIRE_MINUTES: int = 2
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 465
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    SMTP_FROM: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

@lru_cache
def get_settings() -> Settings:
    return Settings()

# --- Database ---
def get_db_client(url: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def get_db(request: Request):
    return request.app.mongodb

def str_to_oid(id: str, detail: str = "Invalid ID format") -> ObjectId:
    if not ObjectId.is_valid(id):
        raise NotFoundException(detail)
    return ObjectId(id)

# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str, settings: Settings) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Token failed")

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        return None
    return param.strip()

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: Any
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: Any = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

# --- Decorators/Dependencies ---
USER_PRIVATE_FIELDS = ("password_hash", "otp_hash", "otp_expires_at", "reset_otp_hash", "reset_otp_expires_at")

def to_safe_user(user: dict) -> dict:
    """Copy of a user document without hashes or OTP state, with a string ``id``."""
    data = {k: v for k, v in user.items() if k not in USER_PRIVATE_FIELDS}
    data["id"] = str(data.pop("_id"))
    return data

async def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    """
    Resolve the bearer token into the current user document.

    The user is reloaded from the database on every request so role changes
    apply immediately. Tokens bound to a logged-out session are rejected, and
    the session's ``last_seen_at`` is refreshed otherwise.
    """
    token = bearer_token(authorization)
    if not token:
        raise UnauthorizedException("Not authorized, no token")

    payload = verify_token(token, request.app.state.settings)
    db = request.app.mongodb
    if not ObjectId.is_valid(payload.get("sub") or ""):
        raise UnauthorizedException("Token failed")
    user_oid = ObjectId(payload["sub"])

    user = await db.users.find_one({"_id": user_oid})
    if not user:
        raise UnauthorizedException("User not found")
    request.state.user_id = str(user_oid)

    session_id = payload.get("sid")
    if session_id:
        if not ObjectId.is_valid(session_id):
            raise UnauthorizedException("Token failed")
        session = await db.user_sessions.find_one_and_update(
            {"_id": ObjectId(session_id), "user_id": str(user_oid), "is_active": True},
            {"$set": {"last_seen_at": datetime.utcnow()}},
        )
        if not session:
            raise UnauthorizedException("Session is no longer active")

    return user

async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise ForbiddenException("Admin access required")
    return user
