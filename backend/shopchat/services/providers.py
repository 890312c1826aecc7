# /shopchat/services/providers.py

import logging
from typing import Any, Dict, List, Optional

from shopchat.config import strings
from shopchat.config.channels import ChannelConfig
from shopchat.config.settings import settings
from shopchat.models.tools import ToolDescriptor, ToolErrorType, ToolProvider, ToolResult
from shopchat.services.auth_service import AuthEscalationFlow, AuthState
from shopchat.services.db_service import db_service
from shopchat.services.mcp_client import JsonRpcClient, McpRequestError
from shopchat.services.quantity_service import IncrementResolver
from shopchat.services.tool_catalog import normalize_tools

logger = logging.getLogger(__name__)


class StorefrontProvider:
    """Public storefront tools. No authentication; transport errors propagate to the dispatcher."""

    provider = ToolProvider.STOREFRONT

    def __init__(self, client: JsonRpcClient):
        self.client = client

    async def list_tools(self, disabled=()) -> List[ToolDescriptor]:
        logger.info(f"Connecting to storefront tools at {self.client.endpoint}")
        return normalize_tools(await self.client.list_tools(), self.provider, disabled)

    async def call(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        logger.info(f"Calling storefront tool {name}")
        return ToolResult.success(await self.client.call_tool(name, arguments))


class CustomerProvider:
    """
    Customer-account tools, called with the conversation's bearer token.

    The token is taken from memory, then from the token store, and otherwise
    the call goes out unauthenticated. A 401 is never retried: it starts the
    authorization escalation and its result is returned instead.
    """

    provider = ToolProvider.CUSTOMER

    def __init__(
        self,
        client: JsonRpcClient,
        conversation_id: str,
        escalation: AuthEscalationFlow,
        token_store=db_service,
    ):
        self.client = client
        self.conversation_id = conversation_id
        self.escalation = escalation
        self.token_store = token_store
        self.auth_state = AuthState.UNAUTHENTICATED
        self._access_token: Optional[str] = None

    async def _resolve_token(self) -> Optional[str]:
        if self._access_token:
            return self._access_token
        try:
            token = await self.token_store.get_token(self.conversation_id)
        except Exception as e:
            logger.warning(f"Token lookup failed for {self.conversation_id}: {e}")
            token = None
        if token:
            self._access_token = token.access_token
            self.auth_state = AuthState.AUTHORIZED
        else:
            logger.info(f"No customer token for conversation {self.conversation_id}")
        return self._access_token

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def forget_token(self):
        self._access_token = None
        self.auth_state = AuthState.UNAUTHENTICATED

    async def list_tools(self, disabled=()) -> List[ToolDescriptor]:
        logger.info(f"Connecting to customer tools at {self.client.endpoint}")
        token = await self._resolve_token()
        return normalize_tools(await self.client.list_tools(self._headers(token)), self.provider, disabled)

    async def call(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        logger.info(f"Calling customer tool {name} (token present: {bool(self._access_token)})")
        try:
            token = await self._resolve_token()
            result = await self.client.call_tool(name, arguments, self._headers(token))
        except McpRequestError as e:
            if e.is_unauthorized:
                logger.info(f"Customer tool {name} unauthorized; starting authorization")
                self.forget_token()
                result = await self.escalation.escalate(self.conversation_id)
                if result.error and result.error.type == ToolErrorType.AUTH_REQUIRED:
                    self.auth_state = AuthState.ESCALATION_ISSUED
                return result
            logger.error(f"Error calling customer tool {name}: {e}")
            return ToolResult.failure(ToolErrorType.INTERNAL_ERROR, f"Error calling tool {name}: {e}")
        except Exception as e:
            logger.error(f"Error calling customer tool {name}: {e}", exc_info=True)
            return ToolResult.failure(ToolErrorType.INTERNAL_ERROR, f"Error calling tool {name}: {e}")
        return ToolResult.success(result)


# --- Local tools ---

LOCAL_TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "validate_quantity": {
        "description": (
            "Check whether a quantity is allowed for a product. Some products are only sold in "
            "multiples (e.g. packs of 5). Returns the nearest valid quantity."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "quantity": {"type": "integer", "description": "Quantity the customer asked for"},
                "product_id": {"type": "string", "description": "Product id or GID"},
                "variant_id": {"type": "string", "description": "Variant id or GID"},
                "product_title": {"type": "string", "description": "Product title, used when no id is known"},
            },
            "required": ["quantity"],
        },
    },
    "request_human_handoff": {
        "description": "Pass the conversation to a member of staff when the customer asks for a person.",
        "input_schema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Short summary of why a person is needed"},
            },
        },
    },
    "send_order_form": {
        "description": "Send the wholesale order form document to the customer.",
        "input_schema": {"type": "object", "properties": {}},
    },
}


class LocalProvider:
    """In-process tools. Side effects of custom actions belong to the channel handler."""

    provider = ToolProvider.LOCAL

    def __init__(self, channel: ChannelConfig, resolver: IncrementResolver):
        self.channel = channel
        self.resolver = resolver

    def descriptors(self, disabled=()) -> List[ToolDescriptor]:
        raw = [
            {"name": name, **LOCAL_TOOL_SCHEMAS[name]}
            for name in self.channel.local_tools
            if name in LOCAL_TOOL_SCHEMAS
        ]
        return normalize_tools(raw, self.provider, disabled)

    async def call(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        if name not in self.channel.local_tools:
            return ToolResult.failure(ToolErrorType.TOOL_NOT_FOUND, f"Tool {name} not found")

        if name == "validate_quantity":
            return ToolResult.success(await self.resolver.validate(
                arguments.get("quantity"),
                product_id=arguments.get("product_id"),
                variant_id=arguments.get("variant_id"),
                title=arguments.get("product_title"),
            ))

        if name == "request_human_handoff":
            return ToolResult.custom("request_human_handoff", {
                "reason": arguments.get("reason") or "",
                "message": strings.HANDOFF_ACKNOWLEDGEMENT,
            })

        if name == "send_order_form":
            if not settings.order_form_url:
                return ToolResult.success({"sent": False, "message": strings.ORDER_FORM_UNAVAILABLE})
            return ToolResult.custom("send_order_form", {
                "url": settings.order_form_url,
                "filename": settings.order_form_filename,
                "message": strings.ORDER_FORM_CAPTION,
            })

        return ToolResult.failure(ToolErrorType.TOOL_NOT_FOUND, f"Tool {name} not found")
