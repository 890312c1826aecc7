# /shopchat/utils/dependencies.py

import hmac
import hashlib
import secrets
import structlog
from fastapi import Request, HTTPException

from shopchat.config.settings import settings
from shopchat.utils.metrics import webhook_signature_counter
from shopchat.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def is_valid_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Checks a Meta `X-Hub-Signature-256` header (`sha256=<hex>`) against the raw body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not is_valid_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", client_ip=get_remote_address(request), signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


def _api_key_matches(request: Request) -> bool:
    provided_key = request.headers.get("X-API-KEY")
    return bool(provided_key and secrets.compare_digest(provided_key, settings.api_key))


async def verify_metrics_access(request: Request):
    if settings.api_key and not _api_key_matches(request):
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


async def verify_api_key(request: Request):
    if not settings.api_key:
        raise HTTPException(status_code=503, detail="Admin API key is not configured")
    if not _api_key_matches(request):
        raise HTTPException(status_code=403, detail="Invalid or missing API key")
