from fastapi import FastAPI, HTTPException, Request, status
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Optional

from shared.utils import Settings, get_settings, get_db_client, HealthResponse, ErrorResponse
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware

from services.auth.main import router as auth_router
from services.users.main import router as users_router
from services.products.main import router as products_router
from services.cart.main import router as cart_router
from services.payments.main import router as payments_router
from services.payments.gateway import KhaltiGateway
from services.payments.service import PaymentService
from services.payments.store import PaymentStore

SERVICE_NAME = "inventory-api"
VERSION = "1.0.0"

def validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    if first.get("type") == "missing" and field:
        return f"{field} is required"
    message = first.get("msg", "Invalid request")
    # pydantic prefixes messages raised from validators
    return message.removeprefix("Value error, ")

async def create_indexes(db):
    await db.users.create_index("email", unique=True)
    await db.user_sessions.create_index([("user_id", 1), ("last_seen_at", -1)])
    await db.products.create_index([("updated_at", -1)])
    await db.carts.create_index("user_id", unique=True)

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)

    app = FastAPI(title="Inventory Manager API", version=VERSION)
    app.state.settings = settings

    # Security Setup
    setup_rate_limiting(app)
    app.add_middleware(SecurityHeadersMiddleware)

    # Middleware
    app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(message=exc.detail).dict(exclude_none=True),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(message=validation_message(exc)).dict(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception", exc_info=exc, extra={"path": request.url.path})
        body = ErrorResponse(message="Server Error")
        if not settings.is_production:
            body.details = str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.dict(exclude_none=True),
        )

    for router in (auth_router, users_router, products_router, cart_router, payments_router):
        app.include_router(router, prefix="/api")

    @app.on_event("startup")
    async def startup_db_client():
        app.mongodb_client = get_db_client(settings.MONGO_URL)
        app.mongodb = app.mongodb_client[settings.MONGO_DB]

        store = PaymentStore(app.mongodb_client, app.mongodb)
        await store.ensure_indexes()
        await create_indexes(app.mongodb)

        app.state.payment_service = PaymentService(store, KhaltiGateway(settings), settings)
        if not settings.KHALTI_SECRET_KEY:
            logger.warning("KHALTI_SECRET_KEY is not set; payment calls will fail")

    @app.on_event("shutdown")
    async def shutdown_db_client():
        app.mongodb_client.close()

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        try:
            await app.mongodb.command("ping")
            db_status = "connected"
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            db_status = "disconnected"

        if db_status != "connected":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service Unhealthy")

        return HealthResponse(
            service=SERVICE_NAME,
            status="healthy",
            timestamp=datetime.utcnow(),
            version=VERSION,
            database=db_status,
        )

    return app

app = create_app()
