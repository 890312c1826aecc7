# /shopchat/services/chat_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shopchat.config import strings
from shopchat.config.channels import WEB_CHANNEL, WHATSAPP_CHANNEL, ChannelConfig
from shopchat.config.settings import settings
from shopchat.models.conversation import (
    channel_for_conversation,
    first_text,
    phone_from_conversation,
    web_conversation_id,
    whatsapp_conversation_id,
)
from shopchat.services.ai_service import LLMServiceError
from shopchat.services.conversation_engine import ConversationEngine, TurnOutcome, conversation_engine
from shopchat.services.db_service import db_service
from shopchat.services.dispatcher import DispatcherCache, dispatcher_cache
from shopchat.services.shopify_service import preferred_shop_domain, resolve_shop_id
from shopchat.services.whatsapp_service import WhatsAppService, whatsapp_service
from shopchat.utils.logging import bind_conversation

# Channel handlers: each inbound web or WhatsApp message runs one engine turn
# and this layer performs whatever the turn asked for outside the core
# (sending documents, flagging a handoff, delivering the reply).

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        engine: ConversationEngine = conversation_engine,
        cache: DispatcherCache = dispatcher_cache,
        store=db_service,
        whatsapp: WhatsAppService = whatsapp_service,
    ):
        self.engine = engine
        self.cache = cache
        self.store = store
        self.whatsapp = whatsapp

    async def _run_turn(
        self,
        channel: ChannelConfig,
        conversation_id: str,
        message: str,
        shop_domain: Optional[str] = None,
        shop_id: Optional[str] = None,
        prompt_type: Optional[str] = None,
    ) -> TurnOutcome:
        bind_conversation(conversation_id, channel.name)
        domain = preferred_shop_domain(shop_domain)
        shop = resolve_shop_id(shop_id or settings.shop_id, domain)
        await self.store.set_metadata(conversation_id, {
            "channel": channel.name,
            "shop_domain": domain,
            "shop_id": shop,
            "last_message_at": datetime.now(timezone.utc),
        })

        dispatcher = await self.cache.get_or_connect(domain, shop, conversation_id, channel)
        try:
            return await self.engine.run_turn(
                conversation_id, message, dispatcher, prompt_type or channel.prompt_type
            )
        except LLMServiceError as e:
            logger.error(f"LLM unavailable for {conversation_id}: {e}")
            return TurnOutcome(conversation_id=conversation_id, reply=strings.GENERIC_APOLOGY)

    async def handle_web_message(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        shop_domain: Optional[str] = None,
        shop_id: Optional[str] = None,
        prompt_type: Optional[str] = None,
    ) -> TurnOutcome:
        conversation_id = conversation_id or web_conversation_id()
        outcome = await self._run_turn(WEB_CHANNEL, conversation_id, message, shop_domain, shop_id, prompt_type)
        for action in outcome.custom_actions:
            await self._handle_custom_action(conversation_id, action)
        return outcome

    async def handle_whatsapp_message(self, phone: str, text: str) -> TurnOutcome:
        conversation_id = whatsapp_conversation_id(phone)
        logger.info(f"WhatsApp message from {conversation_id}")
        outcome = await self._run_turn(WHATSAPP_CHANNEL, conversation_id, text)
        for action in outcome.custom_actions:
            await self._handle_custom_action(conversation_id, action, phone=phone)
        await self.whatsapp.send_message(phone, outcome.reply)
        return outcome

    async def _handle_custom_action(self, conversation_id: str, action: Dict[str, Any], phone: Optional[str] = None):
        name = action.get("action")
        if name == "request_human_handoff":
            logger.info(f"Human handoff requested for {conversation_id}")
            await self.store.set_metadata(conversation_id, {
                "handoff_requested": True,
                "handoff_reason": action.get("reason") or "",
                "handoff_requested_at": datetime.now(timezone.utc),
            })
        elif name == "send_order_form":
            if not phone:
                logger.warning(f"Order form requested outside WhatsApp for {conversation_id}")
                return
            await self.whatsapp.send_document(
                phone, action["url"], action.get("filename") or settings.order_form_filename, action.get("message")
            )
        else:
            logger.warning(f"Unknown custom action '{name}' for {conversation_id}")

    async def reset_conversation(self, conversation_id: str) -> Optional[int]:
        """
        Starts a conversation over: deletes its messages, clears the handoff
        flags and the remembered cart, and drops its cached dispatchers so no
        in-memory cart state survives. Returns the number of deleted messages,
        or None if the history could not be deleted.
        """
        await self.cache.invalidate(conversation_id)
        deleted = await self.store.delete_messages(conversation_id)
        if deleted is None:
            logger.error(f"Failed to delete history for {conversation_id}")
            return None

        await self.store.set_metadata(conversation_id, {
            "handoff_requested": False,
            "handoff_reason": None,
            "handoff_requested_at": None,
            "last_cart_id": None,
            "last_checkout_url": None,
            "cart_updated_at": None,
        })
        logger.info(f"Chat reset for {conversation_id}: {deleted} messages deleted")
        return deleted

    async def resume_after_authorization(self, conversation_id: str) -> Optional[TurnOutcome]:
        """Replays the customer's last message once the conversation has a token."""
        await self.cache.invalidate(conversation_id)

        history = await self.store.get_history(conversation_id, settings.history_limit)
        last_message = next(
            (text for text in (first_text(m.content) for m in reversed(history) if m.role == "user") if text),
            None,
        )
        if not last_message:
            logger.info(f"Nothing to resume for {conversation_id}")
            return None

        logger.info(f"Resuming conversation {conversation_id} after authorization")
        phone = phone_from_conversation(conversation_id)
        if channel_for_conversation(conversation_id) == WHATSAPP_CHANNEL.name and phone:
            return await self.handle_whatsapp_message(phone, last_message)

        metadata = await self.store.get_metadata(conversation_id)
        return await self.handle_web_message(
            last_message,
            conversation_id=conversation_id,
            shop_domain=metadata.get("shop_domain"),
            shop_id=metadata.get("shop_id"),
        )


# Globally accessible instance
chat_service = ChatService()
