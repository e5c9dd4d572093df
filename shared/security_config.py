from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re
import html

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address)

async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded):
    response = JSONResponse(
        status_code=429,
        content={"success": False, "message": f"Too many requests, limit is {exc.detail}"},
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)

# --- Security Headers Middleware ---
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: https:; object-src 'none'; frame-ancestors 'none';",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

# Payment records, receipts and sessions must not sit in shared caches
NO_STORE_PREFIXES = ("/api/payment", "/api/auth", "/api/users", "/api/cart")

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """
    Sanitize input string:
    - HTML escape
    - Strip whitespace
    """
    if not isinstance(text, str):
        return text

    clean_text = text.strip()
    clean_text = html.escape(clean_text)

    return clean_text

PASSWORD_RULE = "Password must include at least 1 uppercase letter, 1 number, and 1 special character."

def validate_password_strength(password: str) -> bool:
    """
    Validate password strength:
    - Min 6 chars
    - At least one uppercase
    - At least one digit
    - At least one character that is not a letter or digit
    """
    if len(password) < 6:
        return False
    if not re.search(r"[A-Z]", password):
        return False
    if not re.search(r"\d", password):
        return False
    if not re.search(r"[^A-Za-z0-9]", password):
        return False
    return True

# --- Image references ---
DATA_IMAGE_PATTERN = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+$")
AVATAR_DATA_PATTERN = re.compile(r"^data:image/(png|jpe?g|webp|gif);base64,[A-Za-z0-9+/=]+$")
HTTP_URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)
MAX_AVATAR_BYTES = 2 * 1024 * 1024

def is_image_data_url(value) -> bool:
    return isinstance(value, str) and value.startswith("data:image/") and ";base64," in value

def is_image_ref(value: str) -> bool:
    """True for an http(s) URL or a base64 image data URL."""
    return bool(HTTP_URL_PATTERN.match(value) or DATA_IMAGE_PATTERN.match(value))

def estimate_data_url_bytes(data_url: str) -> int:
    """Decoded size of a base64 data URL, estimated without decoding it."""
    if not is_image_data_url(data_url):
        return 0
    encoded = data_url.split(",", 1)[1]
    padding = 2 if encoded.endswith("==") else 1 if encoded.endswith("=") else 0
    return max(0, (len(encoded) * 3) // 4 - padding)
