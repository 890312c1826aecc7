# /shopchat/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Any, Dict, Optional

from shopchat.config.settings import settings
from shopchat.utils.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


def clean_phone_number(phone: str) -> str:
    clean_phone = re.sub(r"[^\d+]", "", phone)
    if not clean_phone.startswith("+"):
        clean_phone = "+" + clean_phone.lstrip("+")
    return clean_phone


class WhatsAppService:
    def __init__(self, access_token: Optional[str], phone_id: Optional[str], http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.base_url = "https://graph.facebook.com/v18.0"
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: Dict[str, Any]) -> Optional[str]:
        """Posts to the messages API; returns the wamid or None on failure."""
        to_phone = payload.get("to")
        if not self.access_token or not self.phone_id:
            logger.error("WhatsApp credentials are not configured; message not sent")
            return None
        try:
            url = f"{self.base_url}/{self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = (response.json().get("messages") or [{}])[0].get("id")
                logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
                return message_id

            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            return None

    async def send_message(self, to_phone: str, message: str) -> Optional[str]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone_number(to_phone),
            "type": "text",
            "text": {"body": message[:4096]},
        }
        return await self.send_whatsapp_request(payload)

    async def send_document(self, to_phone: str, document_url: str, filename: str, caption: Optional[str] = None) -> Optional[str]:
        document = {"link": document_url, "filename": filename}
        if caption:
            document["caption"] = caption[:1024]
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone_number(to_phone),
            "type": "document",
            "document": document,
        }
        return await self.send_whatsapp_request(payload)


# Globally accessible instance
whatsapp_service = WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_phone_id)
