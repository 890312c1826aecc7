# /shopchat/routes/chat.py

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from shopchat.config.settings import settings
from shopchat.models.api import APIResponse, ChatRequest, ChatResetRequest, ChatResponse
from shopchat.models.conversation import web_conversation_id
from shopchat.services.chat_service import chat_service
from shopchat.services.db_service import db_service
from shopchat.utils.metrics import response_time_histogram
from shopchat.utils.rate_limiter import limiter

# Endpoints used by the storefront chat widget.

router = APIRouter(tags=["Chat"])

log = structlog.get_logger(__name__)


@router.post("/chat", response_model=ChatResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def chat(request: Request, chat_request: ChatRequest):
    """Runs one conversation turn for a web chat message."""
    with response_time_histogram.labels(endpoint="chat").time():
        conversation_id = chat_request.conversation_id or web_conversation_id(
            chat_request.customer_id, chat_request.anonymous_id
        )
        log.info("Web chat message received.", conversation_id=conversation_id)
        outcome = await chat_service.handle_web_message(
            chat_request.message,
            conversation_id=conversation_id,
            shop_domain=chat_request.shop_domain,
            shop_id=chat_request.shop_id,
            prompt_type=chat_request.prompt_type,
        )
        return ChatResponse(
            conversation_id=outcome.conversation_id,
            reply=outcome.reply,
            auth_required=outcome.auth_required,
            auth_url=outcome.auth_url,
            custom_actions=outcome.custom_actions,
            cart=outcome.cart,
        )


@router.get("/chat/history", response_model=APIResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def chat_history(
    request: Request,
    conversation_id: str = Query(..., min_length=1),
    limit: int = Query(default=settings.history_limit, ge=1, le=100),
):
    """Returns the most recent messages of a conversation, oldest first."""
    messages = await db_service.get_history(conversation_id, limit)
    return APIResponse(
        success=True,
        message=f"Retrieved {len(messages)} messages.",
        data={
            "conversation_id": conversation_id,
            "messages": [m.model_dump(mode="json") for m in messages],
        },
        version=settings.api_version,
    )


@router.post("/chat/reset", response_model=APIResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def reset_chat(request: Request, reset_request: ChatResetRequest):
    """Clears a conversation's history, handoff flags and remembered cart."""
    deleted = await chat_service.reset_conversation(reset_request.conversation_id)
    if deleted is None:
        raise HTTPException(status_code=500, detail="Failed to reset chat")
    log.info("Chat reset.", conversation_id=reset_request.conversation_id, deleted=deleted)
    return APIResponse(
        success=True,
        message="Chat history cleared successfully",
        data={"conversation_id": reset_request.conversation_id, "deleted_messages": deleted},
        version=settings.api_version,
    )
