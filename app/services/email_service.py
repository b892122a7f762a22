"""
Email delivery with provider fallback and retry

Sending never raises; failures are logged and reported as False.
"""

from email.message import EmailMessage
from typing import Awaitable, Callable, List, Optional
import asyncio
import logging

import aiosmtplib
import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

class EmailProvider:
    """Base email provider"""

    name = "base"

    def is_configured(self) -> bool:
        return True

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        raise NotImplementedError

class ResendProvider(EmailProvider):
    """HTTP API provider (Resend)"""

    name = "api"

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.sender = sender or settings.MAIL_FROM
        self.api_url = api_url or settings.RESEND_API_URL
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.sender)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        payload = {"from": self.sender, "to": [to], "subject": subject, "text": text}
        if html:
            payload["html"] = html
        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            response = await client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()

class SMTPProvider(EmailProvider):
    """SMTP provider"""

    name = "smtp"

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USER
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.use_tls = use_tls if use_tls is not None else settings.SMTP_USE_TLS
        self.sender = sender or settings.MAIL_FROM

    def is_configured(self) -> bool:
        return bool(self.host)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        message = EmailMessage()
        message["From"] = f"{settings.MAIL_FROM_NAME} <{self.sender}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")

        await aiosmtplib.send(
            message,
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=self.use_tls,
            timeout=30,
        )

class EmailService:
    """Tries each provider in order, retrying each with exponential backoff"""

    def __init__(
        self,
        providers: Optional[List[EmailProvider]] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = providers if providers is not None else default_providers()
        self.max_attempts = max_attempts or settings.EMAIL_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.EMAIL_RETRY_BASE_DELAY
        self._sleep = sleep

    async def _send_with_retry(
        self,
        provider: EmailProvider,
        to: str,
        subject: str,
        text: str,
        html: Optional[str],
    ) -> bool:
        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                await provider.send(to, subject, text, html)
                logger.info(f"Email sent via {provider.name} to {to} (attempt {attempt})")
                return True
            except Exception as e:
                logger.error(f"Email send via {provider.name} failed (attempt {attempt}): {e}")
                if attempt < self.max_attempts:
                    await self._sleep(delay)
                    delay *= 2
        return False

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        """
        Send email through the first provider that succeeds

        Returns:
            True if any provider delivered the message
        """
        if not to:
            return False
        for provider in self.providers:
            if not provider.is_configured():
                continue
            if await self._send_with_retry(provider, to, subject, text, html):
                return True
        logger.error(f"All email providers failed for {to}: {subject}")
        return False

    async def notify_admin(self, subject: str, text: str) -> bool:
        """Operational alert to the configured admin mailbox"""
        if not settings.ADMIN_NOTIFICATION_EMAIL:
            logger.info(f"Admin notification skipped (no recipient): {subject}")
            return False
        return await self.send(settings.ADMIN_NOTIFICATION_EMAIL, subject, text)

def default_providers() -> List[EmailProvider]:
    """Primary provider from MAIL_PROVIDER, the other as fallback"""
    api, smtp = ResendProvider(), SMTPProvider()
    if settings.MAIL_PROVIDER == "api":
        return [api, smtp]
    return [smtp, api]
