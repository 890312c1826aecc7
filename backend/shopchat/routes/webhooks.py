# /shopchat/routes/webhooks.py

import json
import structlog
from typing import Dict, List, Tuple
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from shopchat.config.settings import settings
from shopchat.services.chat_service import chat_service
from shopchat.utils.dependencies import verify_webhook_signature
from shopchat.utils.metrics import response_time_histogram
from shopchat.utils.rate_limiter import limiter

# WhatsApp Cloud API webhook. Inbound text messages are answered in the
# background so Meta gets its 200 immediately.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


def extract_text_messages(data: Dict) -> List[Tuple[str, str]]:
    """Returns (phone, text) for every inbound text message in a webhook payload."""
    messages = []
    for entry in data.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            for message in value.get("messages", []) or []:
                if message.get("type") != "text":
                    log.info("Ignoring non-text WhatsApp message.", message_type=message.get("type"))
                    continue
                phone = message.get("from")
                text = (message.get("text") or {}).get("body", "").strip()
                if phone and text:
                    messages.append((phone, text))
    return messages


async def process_whatsapp_message(phone: str, text: str):
    try:
        await chat_service.handle_whatsapp_message(phone, text)
    except Exception as e:
        log.error("WhatsApp message processing failed.", phone=phone, error=str(e), exc_info=True)


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Queues a conversation turn for each inbound text message."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        messages = extract_text_messages(data)
        for phone, text in messages:
            background_tasks.add_task(process_whatsapp_message, phone, text)
        log.info("WhatsApp webhook processed.", messages=len(messages))
        return {"status": "ok", "messages": len(messages)}
