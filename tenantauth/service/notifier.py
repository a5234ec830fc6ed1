from __future__ import annotations

import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.storage.models import Account

logger = get_logger(__name__)

CHANNEL_SMS = "SMS"
CHANNEL_EMAIL = "Email"

MSG91_OTP_URL = "https://api.msg91.com/api/v5/otp"
TWO_FACTOR_URL = "https://2factor.in/API/V1/{api_key}/SMS/{phone}/{otp}"


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


class EmailService:
    """SMTP delivery of one-time reset codes.

    Falls back to logging when SMTP is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "ScholarBridge",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=_redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=_redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset_otp(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = "Your password reset code"
        text_body = (
            f"Your password reset code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes. If you did not request a reset, "
            "you can ignore this message."
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h2>Password reset</h2>
    <p>Your password reset code is:</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
    <p>It expires in {ttl_minutes} minutes. If you did not request a reset, you can ignore this message.</p>
</body>
</html>
"""
        return self._send_email(to_email, subject, html_body, text_body)


class SMSService:
    """OTP delivery through MSG91, falling back to 2Factor."""

    def __init__(
        self,
        *,
        msg91_api_key: Optional[str] = None,
        msg91_sender_id: Optional[str] = None,
        msg91_template_id: Optional[str] = None,
        two_factor_api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.msg91_api_key = msg91_api_key
        self.msg91_sender_id = msg91_sender_id
        self.msg91_template_id = msg91_template_id
        self.two_factor_api_key = two_factor_api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.msg91_api_key or self.two_factor_api_key)

    @staticmethod
    def normalize_phone(phone: str) -> str:
        return re.sub(r"\D", "", phone)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def _send_msg91(self, client: httpx.Client, phone: str, code: str) -> bool:
        response = client.post(
            MSG91_OTP_URL,
            params={
                "template_id": self.msg91_template_id,
                "mobile": phone,
                "authkey": self.msg91_api_key,
                "otp": code,
                "sender": self.msg91_sender_id,
            },
        )
        response.raise_for_status()
        body = response.json()
        return body.get("type") == "success"

    def _send_two_factor(self, client: httpx.Client, phone: str, code: str) -> bool:
        response = client.get(
            TWO_FACTOR_URL.format(api_key=self.two_factor_api_key, phone=phone, otp=code)
        )
        response.raise_for_status()
        body = response.json()
        return body.get("Status") == "Success"

    def send_otp(self, phone: str, code: str) -> bool:
        digits = self.normalize_phone(phone)
        if not self.is_configured:
            logger.info("sms_dev_mode", to=_redact_phone(digits))
            return True

        with self._client() as client:
            if self.msg91_api_key:
                try:
                    if self._send_msg91(client, digits, code):
                        logger.info("sms_sent", provider="msg91", to=_redact_phone(digits))
                        return True
                    logger.warning("sms_provider_rejected", provider="msg91")
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning(
                        "sms_provider_failed",
                        provider="msg91",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            if self.two_factor_api_key:
                try:
                    if self._send_two_factor(client, digits, code):
                        logger.info("sms_sent", provider="2factor", to=_redact_phone(digits))
                        return True
                    logger.warning("sms_provider_rejected", provider="2factor")
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning(
                        "sms_provider_failed",
                        provider="2factor",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
        logger.error("sms_delivery_failed", to=_redact_phone(digits))
        return False


class OTPNotifier:
    """Chooses a delivery channel for an account and hands the code off."""

    def __init__(self, email: EmailService, sms: SMSService, *, ttl_minutes: int) -> None:
        self.email = email
        self.sms = sms
        self.ttl_minutes = ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "OTPNotifier":
        return cls(
            EmailService(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_user=settings.smtp_user,
                smtp_password=settings.smtp_password,
                smtp_use_tls=settings.smtp_use_tls,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
            ),
            SMSService(
                msg91_api_key=settings.msg91_api_key,
                msg91_sender_id=settings.msg91_sender_id,
                msg91_template_id=settings.msg91_template_id,
                two_factor_api_key=settings.two_factor_api_key,
            ),
            ttl_minutes=settings.otp_ttl_minutes,
        )

    @staticmethod
    def channel_for(account: Account) -> str:
        return CHANNEL_SMS if account.phone else CHANNEL_EMAIL

    def deliver(self, account: Account, code: str) -> bool:
        if account.phone:
            if self.sms.send_otp(account.phone, code):
                return True
            if not account.email:
                return False
        if account.email:
            return self.email.send_password_reset_otp(account.email, code, self.ttl_minutes)
        logger.warning("otp_no_delivery_channel", account_id=account.id)
        return False
