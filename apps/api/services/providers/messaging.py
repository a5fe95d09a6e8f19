"""SMS (Twilio) and email (SMTP) delivery providers."""

from __future__ import annotations

import asyncio
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
import logging
import re
import smtplib
import time
from typing import Optional, Tuple

from twilio.rest import Client

from config import settings
from services.ledger_errors import ProviderError
from services.providers.types import BaseMessagingProvider, OutboundMessage, ProviderResult

logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")


def normalize_phone(phone: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(formatted, error)``; formatted numbers are ``+<digits>``."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 10:
        return None, "Phone number is too short"
    if len(digits) == 11 and not digits.startswith("55"):
        digits = f"55{digits}"
    return f"+{digits}", None


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match((email or "").strip()))


class TwilioSMSProvider(BaseMessagingProvider):
    provider_name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str) -> None:
        self.client = Client(account_sid, auth_token) if account_sid and auth_token else None
        self.from_number = from_number

    def _create(self, message: OutboundMessage):
        return self.client.messages.create(body=message.body, from_=self.from_number, to=message.recipient)

    async def send(self, message: OutboundMessage) -> ProviderResult:
        if self.client is None:
            raise ProviderError(self.provider_name, "Twilio is not configured.", retryable=False)
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(self._create, message)
        except Exception as exc:
            raise ProviderError(self.provider_name, f"SMS delivery failed: {exc}") from exc
        return ProviderResult(
            success=True,
            units_consumed=1,
            latency_ms=int((time.monotonic() - started) * 1000),
            external_ref=result.sid,
            provider=self.provider_name,
            details={"status": result.status, "to": result.to},
        )


class SMTPEmailProvider(BaseMessagingProvider):
    provider_name = "smtp"

    def __init__(self, host: str, port: int, user: str, password: str, from_name: str) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_name = from_name

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def _deliver(self, message: OutboundMessage) -> str:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject or ""
        mime["From"] = f'"{self.from_name}" <{self.user}>'
        mime["To"] = message.recipient
        message_id = make_msgid()
        mime["Message-ID"] = message_id
        mime.attach(MIMEText(HTML_TAG_PATTERN.sub("", message.body), "plain"))
        mime.attach(MIMEText(message.body, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=settings.PROVIDER_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(self.user, [message.recipient], mime.as_string())
        return message_id

    async def send(self, message: OutboundMessage) -> ProviderResult:
        if not self.configured:
            raise ProviderError(self.provider_name, "SMTP is not configured.", retryable=False)
        started = time.monotonic()
        try:
            message_id = await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ProviderError(self.provider_name, f"Email delivery failed: {exc}") from exc
        return ProviderResult(
            success=True,
            units_consumed=1,
            latency_ms=int((time.monotonic() - started) * 1000),
            external_ref=message_id,
            provider=self.provider_name,
            details={"to": message.recipient},
        )


class MessagingGateway(BaseMessagingProvider):
    """Routes each message to the provider for its channel."""

    provider_name = "messaging"

    def __init__(self, sms: BaseMessagingProvider, email: BaseMessagingProvider) -> None:
        self.sms = sms
        self.email = email

    async def send(self, message: OutboundMessage) -> ProviderResult:
        provider = self.sms if message.channel == "sms" else self.email
        return await provider.send(message)


def get_messaging_provider() -> BaseMessagingProvider:
    """FastAPI dependency returning the configured messaging gateway."""
    return MessagingGateway(
        sms=TwilioSMSProvider(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_PHONE_NUMBER,
        ),
        email=SMTPEmailProvider(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASS,
            settings.SMTP_FROM_NAME,
        ),
    )
