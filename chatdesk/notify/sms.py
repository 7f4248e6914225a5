"""SMS gateway: send texts through the Twilio Messages REST endpoint.

Each admin number is attempted independently; a failure for one number is
logged and does not stop the others.
"""
import logging
from typing import Iterable, Optional

import httpx

from chatdesk.config import TWILIO_ACCOUNT_SID, TWILIO_API_BASE, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER
from chatdesk.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 320


class SmsGateway:
    def __init__(
        self,
        account_sid: str = TWILIO_ACCOUNT_SID,
        auth_token: str = TWILIO_AUTH_TOKEN,
        from_number: str = TWILIO_PHONE_NUMBER,
        api_base: str = TWILIO_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=10)

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, numbers: Iterable[str], body: str) -> int:
        """Text every number. Returns how many sends succeeded; raises if none did."""
        targets = [n.strip() for n in numbers if n and n.strip()]
        if not targets:
            raise UpstreamUnavailable("sms", "no admin phone numbers configured")
        if not self.configured:
            raise UpstreamUnavailable("sms", "Twilio credentials not configured")

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        sent = 0
        for number in targets:
            try:
                resp = await self._client.post(
                    url,
                    data={"To": number, "From": self.from_number, "Body": body[:SMS_MAX_CHARS]},
                    auth=(self.account_sid, self.auth_token),
                )
                resp.raise_for_status()
                sent += 1
                logger.debug(f"SMS sent to {number}")
            except httpx.HTTPError as e:
                logger.error(f"Failed to send SMS to {number}: {type(e).__name__}: {e}")
        if sent == 0:
            raise UpstreamUnavailable("sms", f"all {len(targets)} sends failed")
        return sent

    async def close(self) -> None:
        await self._client.aclose()
