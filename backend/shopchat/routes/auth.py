# /shopchat/routes/auth.py

import html
import structlog
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import HTMLResponse

from shopchat.config import strings
from shopchat.config.settings import settings
from shopchat.models.conversation import phone_from_conversation
from shopchat.services.auth_service import TokenExchangeError, oauth_callback_handler
from shopchat.services.chat_service import chat_service
from shopchat.services.whatsapp_service import whatsapp_service
from shopchat.utils.metrics import auth_escalations_counter
from shopchat.utils.rate_limiter import limiter

# Customer account OAuth callback: stores the token against the conversation
# and picks the conversation up again with the customer's last message.

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)

log = structlog.get_logger(__name__)

SUCCESS_PAGE = "<html><body><h2>Authorization successful</h2><p>You can close this window and return to the chat.</p></body></html>"
FAILURE_PAGE = "<html><body><h2>Authorization failed</h2><p>{reason}</p></body></html>"


async def resume_conversation(conversation_id: str):
    try:
        await chat_service.resume_after_authorization(conversation_id)
    except Exception as e:
        log.error("Conversation resumption failed.", conversation_id=conversation_id, error=str(e), exc_info=True)


@router.get("/callback", response_class=HTMLResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def oauth_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Exchanges the authorization code for a customer token."""
    if error or not code or not state:
        log.warning("OAuth callback without a code.", error=error)
        auth_escalations_counter.labels(outcome="denied").inc()
        return HTMLResponse(FAILURE_PAGE.format(reason=html.escape(error or "Missing authorization code.")), status_code=400)

    try:
        conversation_id, _ = await oauth_callback_handler.exchange(code, state)
    except TokenExchangeError as e:
        log.error("OAuth token exchange failed.", error=str(e))
        auth_escalations_counter.labels(outcome="exchange_failed").inc()
        return HTMLResponse(FAILURE_PAGE.format(reason=strings.AUTH_FAILURE_WHATSAPP), status_code=400)

    auth_escalations_counter.labels(outcome="authorized").inc()
    log.info("Customer authorized.", conversation_id=conversation_id)

    phone = phone_from_conversation(conversation_id)
    if phone:
        await whatsapp_service.send_message(phone, strings.AUTH_SUCCESS_WHATSAPP)
    background_tasks.add_task(resume_conversation, conversation_id)
    return HTMLResponse(SUCCESS_PAGE)
