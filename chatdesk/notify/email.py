"""Email gateway: send plain-text mail over SMTP with STARTTLS.

smtplib is blocking, so each send runs in a worker thread.
"""
import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Iterable

from chatdesk.config import EMAIL_FROM_NAME, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER
from chatdesk.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class EmailGateway:
    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        user: str = SMTP_USER,
        password: str = SMTP_PASSWORD,
        from_name: str = EMAIL_FROM_NAME,
        timeout: float = 20,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_name = from_name
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    async def send(self, recipients: Iterable[str], subject: str, body: str) -> int:
        """Send one message to all recipients. Returns the recipient count."""
        to = [r for r in recipients if r]
        if not to:
            raise UpstreamUnavailable("email", "no recipients configured")
        if not self.configured:
            raise UpstreamUnavailable("email", "SMTP credentials not configured")
        await asyncio.to_thread(self._send_blocking, to, subject, body)
        logger.info(f"Email sent to {len(to)} recipient(s): {subject}")
        return len(to)

    def _send_blocking(self, to: list[str], subject: str, body: str) -> None:
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = f'"{self.from_name}" <{self.user}>'
        msg["To"] = ", ".join(to)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise UpstreamUnavailable("email", f"{type(e).__name__}: {e}") from e
