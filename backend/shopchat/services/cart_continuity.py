# /shopchat/services/cart_continuity.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from shopchat.models.conversation import CartState
from shopchat.services.db_service import db_service
from shopchat.services.mcp_client import decode_tool_payload

# Remembers the last cart id / checkout URL per conversation so later cart
# calls can omit them. Everything here is best-effort: a failure is logged and
# never fails the tool call that triggered it.

logger = logging.getLogger(__name__)

CART_TOOLS = {"get_cart", "update_cart"}
CART_ID_ARGUMENTS = ("cart_id", "cartId")


def normalize_cart_id(cart_id: Optional[str]) -> Optional[str]:
    if not cart_id or not isinstance(cart_id, str):
        return None
    return cart_id.split("?", 1)[0].strip() or None


def extract_cart_details(payload: Any) -> Tuple[Optional[str], Optional[str]]:
    """Reads `cart.id`/`cart.checkout_url` or flat `cart_id`/`checkout_url` from a tool payload."""
    if not isinstance(payload, dict):
        return None, None
    cart = payload.get("cart")
    if isinstance(cart, dict):
        cart_id = cart.get("id") or cart.get("cart_id")
        checkout_url = cart.get("checkout_url") or cart.get("checkoutUrl")
    else:
        cart_id = payload.get("cart_id") or payload.get("cartId")
        checkout_url = payload.get("checkout_url") or payload.get("checkoutUrl")
    return normalize_cart_id(cart_id), checkout_url or None


class CartContinuity:
    def __init__(self, store=db_service):
        self.store = store
        self._states: Dict[str, CartState] = {}

    def applies_to(self, tool_name: str) -> bool:
        return tool_name in CART_TOOLS

    def current(self, conversation_id: str) -> CartState:
        return self._states.get(conversation_id) or CartState()

    async def _load(self, conversation_id: str) -> CartState:
        state = self._states.get(conversation_id)
        if state is None:
            metadata = await self.store.get_metadata(conversation_id)
            state = CartState(
                cart_id=metadata.get("last_cart_id"),
                checkout_url=metadata.get("last_checkout_url"),
                updated_at=metadata.get("cart_updated_at"),
            )
            self._states[conversation_id] = state
        return state

    async def inject(self, conversation_id: str, tool_name: str, arguments: Dict[str, Any]) -> Optional[str]:
        """Adds the remembered cart id to cart calls that omit one; returns the injected id."""
        if not self.applies_to(tool_name) or any(arguments.get(key) for key in CART_ID_ARGUMENTS):
            return None
        try:
            state = await self._load(conversation_id)
        except Exception as e:
            logger.warning(f"Could not load cart state for {conversation_id}: {e}")
            return None
        if not state.cart_id:
            return None
        arguments["cart_id"] = state.cart_id
        logger.info(f"Injected cart id {state.cart_id} into {tool_name} for {conversation_id}")
        return state.cart_id

    async def capture(self, conversation_id: str, tool_name: str, result: Any) -> Optional[CartState]:
        """Records the cart id / checkout URL from a successful cart call; returns the new state if it changed."""
        if not self.applies_to(tool_name):
            return None
        try:
            cart_id, checkout_url = extract_cart_details(decode_tool_payload(result))
            if not cart_id and not checkout_url:
                return None

            previous = await self._load(conversation_id)
            patch = {}
            if cart_id and cart_id != previous.cart_id:
                patch["last_cart_id"] = cart_id
            if checkout_url and checkout_url != previous.checkout_url:
                patch["last_checkout_url"] = checkout_url
            if not patch:
                return None

            now = datetime.now(timezone.utc)
            patch["cart_updated_at"] = now
            state = CartState(
                cart_id=cart_id or previous.cart_id,
                checkout_url=checkout_url or previous.checkout_url,
                updated_at=now,
            )
            self._states[conversation_id] = state
            await self.store.set_metadata(conversation_id, patch)
            logger.info(f"Cart state updated for {conversation_id}: {state.cart_id}")
            return state
        except Exception as e:
            logger.warning(f"Failed to record cart state for {conversation_id}: {e}", exc_info=True)
            return None
