# /shopchat/models/tools.py

import json
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

# Tool catalogue entries and the single result type every provider returns.


class ToolProvider(str, Enum):
    """Providers in catalogue merge order; earlier providers win name collisions."""
    CUSTOMER = "customer"
    STOREFRONT = "storefront"
    LOCAL = "local"


class ToolDescriptor(BaseModel):
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    provider: ToolProvider

    def to_llm_tool(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


class ToolErrorType(str, Enum):
    AUTH_REQUIRED = "auth_required"    # user must authorize outside this turn
    AUTH_ERROR = "auth_error"          # shop misconfiguration
    INTERNAL_ERROR = "internal_error"  # adapter or transport failure
    TOOL_NOT_FOUND = "tool_not_found"  # name not in the merged catalogue


class ToolError(BaseModel):
    type: ToolErrorType
    data: str


class ToolResult(BaseModel):
    """
    Either a success payload, a typed error, or a custom-action marker that the
    calling channel handler interprets (e.g. sending a document).
    """
    content: Any = None
    error: Optional[ToolError] = None
    custom_action: Optional[str] = None

    @classmethod
    def success(cls, content: Any) -> "ToolResult":
        return cls(content=content)

    @classmethod
    def failure(cls, error_type: ToolErrorType, data: str) -> "ToolResult":
        return cls(error=ToolError(type=error_type, data=data))

    @classmethod
    def custom(cls, action: str, payload: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(content={"custom": True, "action": action, **(payload or {})}, custom_action=action)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_custom(self) -> bool:
        return self.custom_action is not None

    @property
    def requires_auth(self) -> bool:
        return self.is_error and self.error.type in (ToolErrorType.AUTH_REQUIRED, ToolErrorType.AUTH_ERROR)

    @property
    def is_tool_level_error(self) -> bool:
        """True for MCP results flagged with `isError` by the remote tool itself."""
        return isinstance(self.content, dict) and bool(self.content.get("isError"))

    def as_payload(self) -> Any:
        if self.error:
            return {"error": {"type": self.error.type.value, "data": self.error.data}}
        return self.content

    def as_text(self) -> str:
        payload = self.as_payload()
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, default=str)
