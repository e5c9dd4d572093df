from datetime import datetime, timedelta
from decimal import Decimal
import json
import logging

import pytest
from fastapi import HTTPException

from shared.errors import ErrorKind, Result, unwrap
from shared.logging_config import JSONFormatter, mask_headers
from shared.mailer import MailConfigurationError, build_otp_message, send_otp_email
from shared.security_config import (
    estimate_data_url_bytes, is_image_ref, sanitize_input, validate_password_strength,
)
from shared.utils import UnauthorizedException, create_access_token, verify_token
from services.auth.otp import check_otp, generate_otp, hash_otp, otp_expiry
from services.payments.models import to_paisa


@pytest.mark.parametrize("password, ok", [
    ("Secret1!", True),
    ("Ab1!xy", True),
    ("Ab1!x", False),
    ("secret1!", False),
    ("Secret!!", False),
    ("Secret11", False),
])
def test_password_rule(password, ok):
    assert validate_password_strength(password) is ok


def test_otp_is_six_digits():
    for _ in range(50):
        otp = generate_otp()
        assert len(otp) == 6 and otp.isdigit()


def test_check_otp():
    now = datetime(2024, 5, 1, 12, 0)
    stored = hash_otp("123456")
    expires = otp_expiry(2, now=now)

    assert check_otp("123456", stored, expires, now=now) is None
    assert check_otp("654321", stored, expires, now=now) == "invalid"
    assert check_otp("123456", stored, expires, now=now + timedelta(minutes=3)) == "expired"
    assert check_otp("123456", None, None, now=now) == "missing"


def test_token_round_trip(settings):
    token = create_access_token({"sub": "abc", "sid": "def"}, settings)
    payload = verify_token(token, settings)
    assert payload["sub"] == "abc"
    assert payload["sid"] == "def"


def test_token_signed_with_another_key(settings):
    token = create_access_token({"sub": "abc"}, settings.model_copy(update={"SECRET_KEY": "other"}))
    with pytest.raises(UnauthorizedException):
        verify_token(token, settings)


def test_expired_token(settings):
    token = create_access_token({"sub": "abc"}, settings, expires_delta=timedelta(seconds=-1))
    with pytest.raises(UnauthorizedException):
        verify_token(token, settings)


def test_sanitize_input_escapes_html():
    assert sanitize_input("  <b>Lamp</b> ") == "&lt;b&gt;Lamp&lt;/b&gt;"
    assert sanitize_input(None) is None


def test_image_refs():
    assert is_image_ref("https://cdn.trendmart.com/a.png")
    assert is_image_ref("data:image/png;base64,iVBORw0KGgo=")
    assert not is_image_ref("javascript:alert(1)")
    assert estimate_data_url_bytes("data:image/png;base64,QUJD") == 3
    assert estimate_data_url_bytes("https://cdn.trendmart.com/a.png") == 0


def test_unwrap_raises_with_the_kind_status():
    with pytest.raises(HTTPException) as excinfo:
        unwrap(Result.fail(ErrorKind.INSUFFICIENT_STOCK, "Insufficient stock"))
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "Insufficient stock"

    assert unwrap(Result.success({"a": 1})) == {"a": 1}
    assert ErrorKind.NOT_FOUND.status_code == 404
    assert ErrorKind.UPSTREAM.status_code == 500


def test_paisa_rounds_half_up():
    assert to_paisa(Decimal("12.345")) == 1235
    assert to_paisa(Decimal("10")) == 1000


def test_json_formatter_includes_event_fields():
    record = logging.LogRecord("inventory-api.payments", logging.INFO, __file__, 1, "Purchase confirmed", None, None)
    record.event = "purchase_confirmed"
    record.pidx = "abc"

    line = json.loads(JSONFormatter("inventory-api").format(record))

    assert line["service"] == "inventory-api"
    assert line["message"] == "Purchase confirmed"
    assert line["event"] == "purchase_confirmed"
    assert line["pidx"] == "abc"


def test_otp_email_has_text_and_html_parts():
    msg = build_otp_message("mailer@trendmart.com", "sita@trendmart.com", "123456", 2)
    parts = [part.get_content_type() for part in msg.get_payload()]
    assert parts == ["text/plain", "text/html"]
    assert "123456" in msg.get_payload()[0].get_payload()


@pytest.mark.asyncio
async def test_otp_email_needs_smtp_credentials(settings):
    settings = settings.model_copy(update={"SMTP_USER": None})
    with pytest.raises(MailConfigurationError):
        await send_otp_email(settings, "sita@trendmart.com", "123456")


def test_sensitive_headers_are_masked():
    masked = mask_headers({"Authorization": "Bearer abc", "Cookie": "sid=1", "Accept": "application/json"})
    assert masked == {"Authorization": "***", "Cookie": "***", "Accept": "application/json"}
