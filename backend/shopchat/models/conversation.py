# /shopchat/models/conversation.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

# Conversation-level models shared by the engine and the persistence layer.

WEB_ANON_PREFIX = "web_anon_"
WEB_CUSTOMER_PREFIX = "web_customer_"
WHATSAPP_PREFIX = "whatsapp_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A single chat message; `content` is a list of text/tool_use/tool_result blocks."""
    role: Literal["user", "assistant"]
    content: List[Dict[str, Any]]
    created_at: datetime = Field(default_factory=_utcnow)

    def to_llm(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


class CartState(BaseModel):
    cart_id: Optional[str] = None
    checkout_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class QuantityIncrementRule(BaseModel):
    entity_id: str
    increment: int = Field(ge=1)
    entity_type: Literal["product", "variant"] = "product"
    product_title: Optional[str] = None


class CustomerToken(BaseModel):
    conversation_id: str
    access_token: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or _utcnow())


# --- Content block helpers ---

def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def tool_use_block(tool_use_id: str, name: str, tool_input: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input}


def tool_result_block(tool_use_id: str, content: str, is_error: bool = False) -> Dict[str, Any]:
    block = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block


def first_text(content: List[Dict[str, Any]]) -> Optional[str]:
    for block in content:
        if block.get("type") == "text" and block.get("text"):
            return block["text"]
    return None


# --- Conversation identity ---

def whatsapp_conversation_id(phone_number: str) -> str:
    return f"{WHATSAPP_PREFIX}{phone_number.lstrip('+')}"


def web_conversation_id(shopify_customer_id: Optional[str] = None, anonymous_id: Optional[str] = None) -> str:
    if shopify_customer_id:
        return f"{WEB_CUSTOMER_PREFIX}{shopify_customer_id}"
    return f"{WEB_ANON_PREFIX}{anonymous_id or int(_utcnow().timestamp() * 1000)}"


def channel_for_conversation(conversation_id: str) -> str:
    if conversation_id.startswith(WHATSAPP_PREFIX):
        return "whatsapp"
    return "web"


def phone_from_conversation(conversation_id: str) -> Optional[str]:
    if conversation_id.startswith(WHATSAPP_PREFIX):
        return conversation_id[len(WHATSAPP_PREFIX):]
    return None
