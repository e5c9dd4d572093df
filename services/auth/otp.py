import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional


def generate_otp() -> str:
    """Six digit numeric code."""
    return str(secrets.randbelow(900000) + 100000)


def hash_otp(otp: str) -> str:
    # Only the digest is ever stored
    return hashlib.sha256(otp.encode("utf-8")).hexdigest()


def otp_expiry(minutes: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.utcnow()) + timedelta(minutes=minutes)


def check_otp(otp: str, stored_hash: Optional[str], expires_at: Optional[datetime],
              now: Optional[datetime] = None) -> Optional[str]:
    """
    Compare a submitted code against the stored hash.

    Returns None when the code is valid, otherwise one of ``"missing"``,
    ``"expired"`` or ``"invalid"`` so callers can word their own message.
    """
    if not stored_hash or not expires_at:
        return "missing"
    if expires_at < (now or datetime.utcnow()):
        return "expired"
    if not secrets.compare_digest(hash_otp(otp), stored_hash):
        return "invalid"
    return None
