# /shopchat/models/api.py

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from shopchat.models.conversation import CartState

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)
    conversation_id: Optional[str] = Field(default=None, max_length=200)
    customer_id: Optional[str] = None
    anonymous_id: Optional[str] = None
    shop_domain: Optional[str] = None
    shop_id: Optional[str] = None
    prompt_type: Optional[str] = None


class ChatResponse(BaseModel):
    conversation_id: str
    reply: str
    auth_required: bool = False
    auth_url: Optional[str] = None
    custom_actions: List[Dict[str, Any]] = Field(default_factory=list)
    cart: Optional[CartState] = None


class QuantitySyncRequest(BaseModel):
    shop_domain: Optional[str] = None


class ChatResetRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=200)
