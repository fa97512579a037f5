from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from bookhub.config import Settings
from bookhub.logging import get_logger, sanitize_error_message
from bookhub.service.retry import call_with_retry

logger = get_logger(__name__)

RESET_MESSAGE_TEMPLATE = "Dear user, To reset your password, This is Your Otp: {code}"


class SMSService:
    """Dispatches one-time codes through an HTTP SMS gateway.

    The gateway takes a form-encoded ``phone_number``/``message``/``message_type``
    payload authenticated with HTTP basic auth (customer id and API key). Both
    credentials come from configuration. Without them the message is logged.
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        customer_id: Optional[str] = None,
        api_key: Optional[str] = None,
        message_type: str = "ARN",
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_ms: int = 200,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.customer_id = customer_id
        self.api_key = api_key
        self.message_type = message_type
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self.transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> "SMSService":
        return cls(
            api_url=settings.sms_api_url,
            customer_id=settings.sms_customer_id,
            api_key=settings.sms_api_key,
            message_type=settings.sms_message_type,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            backoff_ms=settings.provider_backoff_ms,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.customer_id and self.api_key)

    @staticmethod
    def _redact_phone(phone: str) -> str:
        return f"***{phone[-3:]}" if len(phone) > 3 else "***"

    async def send_message(self, phone: str, message: str) -> bool:
        """Send ``message`` to ``phone``. Returns False once retries are exhausted."""

        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_phone(phone), length=len(message))
            return True

        payload = {
            "phone_number": phone,
            "message": message,
            "message_type": self.message_type,
        }

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self.transport
        ) as client:

            async def _post() -> httpx.Response:
                response = await client.post(
                    self.api_url,
                    data=payload,
                    auth=(self.customer_id, self.api_key),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                return response

            try:
                response = await call_with_retry(
                    "sms_dispatch",
                    _post,
                    max_retries=self.max_retries,
                    timeout_seconds=self.timeout_seconds,
                    backoff_ms=self.backoff_ms,
                )
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "sms_dispatch_rejected",
                    to=self._redact_phone(phone),
                    status_code=exc.response.status_code,
                    error=sanitize_error_message(exc.response.text),
                )
                return False
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                logger.error(
                    "sms_dispatch_failed",
                    to=self._redact_phone(phone),
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                )
                return False

        logger.info("sms_sent", to=self._redact_phone(phone), status_code=response.status_code)
        return True

    async def send_reset_code(self, phone: str, code: str) -> bool:
        return await self.send_message(phone, RESET_MESSAGE_TEMPLATE.format(code=code))
