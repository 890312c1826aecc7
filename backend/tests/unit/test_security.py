# backend/tests/unit/test_security.py

import hashlib
import hmac
import pytest
from fastapi import HTTPException
from unittest.mock import AsyncMock, MagicMock

from shopchat.config.settings import settings
from shopchat.utils.dependencies import (
    is_valid_signature,
    verify_api_key,
    verify_metrics_access,
    verify_webhook_signature,
)
from shopchat.utils.request_utils import get_remote_address


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _request(headers=None, body=b"", host="10.0.0.1"):
    request = MagicMock()
    request.headers = headers or {}
    request.body = AsyncMock(return_value=body)
    request.client.host = host
    return request


class TestWebhookSignature:

    def test_valid_signature(self):
        """A signature computed with the app secret is accepted."""
        body = b'{"entry": []}'
        assert is_valid_signature(body, _sign(body, "secret"), "secret")

    def test_invalid_signatures_are_rejected(self):
        """Wrong secret, missing prefix, or an empty header all fail."""
        body = b'{"entry": []}'
        assert not is_valid_signature(body, _sign(body, "other"), "secret")
        assert not is_valid_signature(body, _sign(body, "secret")[7:], "secret")
        assert not is_valid_signature(body, "", "secret")
        assert not is_valid_signature(b'{"entry": [1]}', _sign(body, "secret"), "secret")

    @pytest.mark.asyncio
    async def test_dependency_returns_verified_body(self):
        body = b'{"entry": []}'
        request = _request({"x-hub-signature-256": _sign(body, settings.whatsapp_app_secret)}, body)

        assert await verify_webhook_signature(request) == body

    @pytest.mark.asyncio
    async def test_dependency_rejects_bad_signature(self):
        request = _request({"x-hub-signature-256": "sha256=invalid"}, b"{}")

        with pytest.raises(HTTPException) as exc_info:
            await verify_webhook_signature(request)
        assert exc_info.value.status_code == 403


class TestApiKey:

    @pytest.mark.asyncio
    async def test_admin_requires_matching_key(self):
        await verify_api_key(_request({"X-API-KEY": settings.api_key}))

        for headers in ({}, {"X-API-KEY": "wrong"}):
            with pytest.raises(HTTPException) as exc_info:
                await verify_api_key(_request(headers))
            assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_is_disabled_without_configured_key(self, mocker):
        mocker.patch.object(settings, "api_key", None)

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(_request({"X-API-KEY": "anything"}))
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_metrics_are_open_without_configured_key(self, mocker):
        mocker.patch.object(settings, "api_key", None)

        await verify_metrics_access(_request())


def test_remote_address_prefers_forwarded_header():
    assert get_remote_address(_request({"x-forwarded-for": "203.0.113.7, 10.0.0.2"})) == "203.0.113.7"
    assert get_remote_address(_request()) == "10.0.0.1"
