"""Tests for the SMS gateway client used to deliver reset codes."""

import base64

import httpx
import pytest

from bookhub.config import Settings
from bookhub.service.sms import RESET_MESSAGE_TEMPLATE, SMSService

API_URL = "https://sms.example.com/v1/messages"


class Gateway:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"status": "queued" if status < 400 else "error"})


def _service(gateway, **overrides):
    params = dict(
        api_url=API_URL,
        customer_id="customer-1",
        api_key="key-1",
        backoff_ms=0,
        max_retries=2,
        transport=httpx.MockTransport(gateway),
    )
    params.update(overrides)
    return SMSService(**params)


async def test_reset_code_message_text():
    gateway = Gateway([200])
    assert await _service(gateway).send_reset_code("+15550100", "A1B2C3") is True

    body = gateway.requests[0].content.decode()
    assert "phone_number=%2B15550100" in body
    assert "message_type=ARN" in body
    assert "A1B2C3" in RESET_MESSAGE_TEMPLATE.format(code="A1B2C3")
    assert RESET_MESSAGE_TEMPLATE.format(code="X") == "Dear user, To reset your password, This is Your Otp: X"


async def test_credentials_sent_as_basic_auth():
    gateway = Gateway([200])
    await _service(gateway).send_message("+15550100", "hello")
    auth_header = gateway.requests[0].headers["Authorization"]
    expected = base64.b64encode(b"customer-1:key-1").decode()
    assert auth_header == f"Basic {expected}"


async def test_gateway_outage_is_retried():
    gateway = Gateway([503, 502, 200])
    assert await _service(gateway).send_message("+15550100", "hello") is True
    assert len(gateway.requests) == 3


async def test_rejection_returns_false_without_retry():
    gateway = Gateway([401])
    assert await _service(gateway).send_message("+15550100", "hello") is False
    assert len(gateway.requests) == 1


async def test_persistent_outage_returns_false():
    gateway = Gateway([500, 500, 500])
    assert await _service(gateway).send_message("+15550100", "hello") is False
    assert len(gateway.requests) == 3


async def test_unconfigured_gateway_logs_instead_of_sending():
    gateway = Gateway([])
    service = _service(gateway, api_key=None)
    assert service.is_configured is False
    assert await service.send_message("+15550100", "hello") is True
    assert gateway.requests == []


def test_from_settings_reads_credentials():
    settings = Settings(
        jwt_secret="x" * 40,
        sms_api_url=API_URL,
        sms_customer_id="cid",
        sms_api_key="secret-key",
        provider_max_retries=1,
    )
    service = SMSService.from_settings(settings)
    assert service.is_configured
    assert service.customer_id == "cid"
    assert service.api_key == "secret-key"
    assert service.max_retries == 1


@pytest.mark.parametrize("phone, redacted", [("+15550100", "***100"), ("12", "***")])
def test_phone_redaction(phone, redacted):
    assert SMSService._redact_phone(phone) == redacted
