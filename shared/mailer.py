import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from shared.utils import Settings

logger = logging.getLogger(__name__)


class MailConfigurationError(RuntimeError):
    pass


def build_otp_message(sender: str, to: str, otp: str, expire_minutes: int) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = "Your TrendMart verification code"

    text = f"Your TrendMart verification code is {otp}. It expires in {expire_minutes} minutes."
    body = f"""
      <div style="font-family: Arial, sans-serif; line-height: 1.5; color: #0b1220;">
        <h2 style="margin: 0 0 12px;">TrendMart verification</h2>
        <p>Use the code below to verify your email address. This code expires in {expire_minutes} minutes.</p>
        <div style="font-size: 24px; font-weight: 700; letter-spacing: 6px; margin: 16px 0;">{otp}</div>
        <p>If you did not request this, you can ignore this email.</p>
      </div>
    """
    msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(body, "html"))
    return msg


def _send(settings: Settings, msg: MIMEMultipart) -> None:
    context = ssl.create_default_context()
    # Port 465 is implicit TLS, anything else upgrades with STARTTLS
    if settings.SMTP_PORT == 465:
        with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, context=context, timeout=30) as server:
            server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.send_message(msg)
    else:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
            server.starttls(context=context)
            server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.send_message(msg)


async def send_otp_email(settings: Settings, to: str, otp: str) -> None:
    """Email a verification / reset code. SMTP errors propagate to the caller."""
    if not settings.SMTP_USER or not settings.SMTP_PASS:
        raise MailConfigurationError("SMTP_USER and SMTP_PASS must be set in the environment")

    sender = settings.SMTP_FROM or settings.SMTP_USER
    msg = build_otp_message(sender, to, otp, settings.OTP_EXPIRE_MINUTES)
    await asyncio.to_thread(_send, settings, msg)
    logger.info("OTP email sent", extra={"event": "otp_sent", "email": to})
