# /shopchat/services/dispatcher.py

import copy
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from shopchat.config.channels import ChannelConfig
from shopchat.config.settings import settings
from shopchat.models.tools import ToolDescriptor, ToolErrorType, ToolProvider, ToolResult
from shopchat.services.auth_service import AuthEscalationFlow, customer_account_resolver
from shopchat.services.cart_continuity import CartContinuity
from shopchat.services.mcp_client import JsonRpcClient
from shopchat.services.providers import CustomerProvider, LocalProvider, StorefrontProvider
from shopchat.services.quantity_service import (
    CATALOG_SEARCH_TOOL,
    IncrementResolver,
    QuantityInterceptor,
    QuantityValidationError,
)
from shopchat.services.shopify_service import (
    customer_mcp_endpoint,
    default_customer_account_url,
    storefront_mcp_endpoint,
)
from shopchat.services.tool_catalog import ToolCatalog
from shopchat.utils.metrics import tool_calls_counter

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    Per-conversation tool hub: owns the three providers, the merged catalogue,
    the quantity interceptor and the cart continuity cache, and turns every
    call into a ToolResult.
    """

    def __init__(
        self,
        conversation_id: str,
        channel: ChannelConfig,
        storefront: StorefrontProvider,
        customer: CustomerProvider,
        local: LocalProvider,
        interceptor: Optional[QuantityInterceptor] = None,
        cart: Optional[CartContinuity] = None,
        disabled_tools: Optional[List[str]] = None,
    ):
        self.conversation_id = conversation_id
        self.channel = channel
        self.providers = {
            ToolProvider.STOREFRONT: storefront,
            ToolProvider.CUSTOMER: customer,
            ToolProvider.LOCAL: local,
        }
        self.interceptor = interceptor
        self.cart = cart
        self.disabled_tools = settings.disabled_tools if disabled_tools is None else disabled_tools
        self.catalog = ToolCatalog([])
        self.connected = False

    @classmethod
    async def create(
        cls, shop_domain: str, shop_id: str, conversation_id: str, channel: ChannelConfig
    ) -> "ToolDispatcher":
        account_url = (
            await customer_account_resolver.resolve(shop_domain)
            or default_customer_account_url(shop_domain)
        )
        storefront = StorefrontProvider(JsonRpcClient(storefront_mcp_endpoint(shop_domain)))
        customer = CustomerProvider(
            JsonRpcClient(customer_mcp_endpoint(account_url)),
            conversation_id,
            AuthEscalationFlow(shop_domain, shop_id),
        )

        async def catalog_search(query: str) -> Any:
            return await storefront.client.call_tool(
                CATALOG_SEARCH_TOOL, {"query": query, "context": "Checking purchase quantity rules"}
            )

        resolver = IncrementResolver(catalog_search=catalog_search)
        return cls(
            conversation_id,
            channel,
            storefront=storefront,
            customer=customer,
            local=LocalProvider(channel, resolver),
            interceptor=QuantityInterceptor(resolver) if channel.enforce_quantity_increments else None,
            cart=CartContinuity() if channel.cart_continuity else None,
        )

    async def connect(self) -> "ToolDispatcher":
        """Lists tools from every provider; a provider that fails to connect is skipped."""
        customer_tools: List[ToolDescriptor] = []
        storefront_tools: List[ToolDescriptor] = []
        try:
            customer_tools = await self.providers[ToolProvider.CUSTOMER].list_tools(self.disabled_tools)
        except Exception as e:
            logger.warning(f"Customer tools unavailable for {self.conversation_id}: {e}")
        try:
            storefront_tools = await self.providers[ToolProvider.STOREFRONT].list_tools(self.disabled_tools)
        except Exception as e:
            logger.warning(f"Storefront tools unavailable for {self.conversation_id}: {e}")
        local_tools = self.providers[ToolProvider.LOCAL].descriptors(self.disabled_tools)

        self.catalog = ToolCatalog.merge(customer_tools, storefront_tools, local_tools)
        self.connected = True
        logger.info(
            f"Dispatcher connected for {self.conversation_id}: {len(customer_tools)} customer, "
            f"{len(storefront_tools)} storefront, {len(local_tools)} local tools"
        )
        return self

    @property
    def tools(self) -> List[ToolDescriptor]:
        return self.catalog.descriptors()

    def llm_tools(self) -> List[Dict[str, Any]]:
        return self.catalog.llm_tools()

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> ToolResult:
        provider = self.catalog.route(name)
        if provider is None:
            logger.error(f"Tool {name} not found in catalogue for {self.conversation_id}")
            tool_calls_counter.labels(provider="unknown", status=ToolErrorType.TOOL_NOT_FOUND.value).inc()
            return ToolResult.failure(ToolErrorType.TOOL_NOT_FOUND, f"Tool {name} not found")

        arguments = copy.deepcopy(arguments) if isinstance(arguments, dict) else {}
        adjustments = []
        try:
            if self.cart:
                await self.cart.inject(self.conversation_id, name, arguments)
            if self.interceptor and provider == ToolProvider.STOREFRONT and self.interceptor.applies_to(name):
                adjustments = await self.interceptor.apply(name, arguments)
            result = await self.providers[provider].call(name, arguments)
        except QuantityValidationError as e:
            logger.warning(f"Rejected {name} for {self.conversation_id}: {e}")
            result = ToolResult.failure(ToolErrorType.INTERNAL_ERROR, str(e))
        except Exception as e:
            logger.error(f"Error calling tool {name}: {e}", exc_info=True)
            result = ToolResult.failure(ToolErrorType.INTERNAL_ERROR, f"Error calling tool {name}: {e}")

        if not result.is_error and not result.is_custom:
            if adjustments and isinstance(result.content, dict):
                result.content = {**result.content, "quantity_adjustments": adjustments}
            if self.cart:
                await self.cart.capture(self.conversation_id, name, result.content)

        status = result.error.type.value if result.error else ("custom" if result.is_custom else "success")
        tool_calls_counter.labels(provider=provider.value, status=status).inc()
        return result

    async def aclose(self):
        for provider in (self.providers[ToolProvider.STOREFRONT], self.providers[ToolProvider.CUSTOMER]):
            try:
                await provider.client.aclose()
            except Exception as e:
                logger.warning(f"Error closing tool client: {e}")


# --- Dispatcher cache ---

CacheKey = Tuple[str, str, str, str]
DispatcherFactory = Callable[[str, str, str, ChannelConfig], Awaitable[ToolDispatcher]]


class EvictionPolicy:
    """Decides which cached dispatchers are stale or surplus."""

    def is_expired(self, created_at: float, now: float) -> bool:
        raise NotImplementedError

    def surplus(self, size: int) -> int:
        raise NotImplementedError


class NoEviction(EvictionPolicy):
    def is_expired(self, created_at: float, now: float) -> bool:
        return False

    def surplus(self, size: int) -> int:
        return 0


class LruTtlEviction(EvictionPolicy):
    def __init__(self, max_entries: int, ttl_seconds: float):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds

    def is_expired(self, created_at: float, now: float) -> bool:
        return self.ttl_seconds > 0 and now - created_at >= self.ttl_seconds

    def surplus(self, size: int) -> int:
        return max(size - self.max_entries, 0)


class DispatcherCache:
    """Connected dispatchers keyed by (shop_domain, shop_id, conversation_id, channel)."""

    def __init__(
        self,
        factory: Optional[DispatcherFactory] = None,
        policy: Optional[EvictionPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory or ToolDispatcher.create
        self.policy = policy or LruTtlEviction(
            settings.dispatcher_cache_max_entries, settings.dispatcher_cache_ttl_seconds
        )
        self.clock = clock
        self._entries: "OrderedDict[CacheKey, Tuple[ToolDispatcher, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    async def get_or_connect(
        self, shop_domain: str, shop_id: str, conversation_id: str, channel: ChannelConfig
    ) -> ToolDispatcher:
        key = (shop_domain, shop_id, conversation_id, channel.name)
        now = self.clock()

        entry = self._entries.get(key)
        if entry:
            dispatcher, created_at = entry
            if not self.policy.is_expired(created_at, now):
                self._entries.move_to_end(key)
                return dispatcher
            await self._drop(key)

        dispatcher = await self.factory(shop_domain, shop_id, conversation_id, channel)
        await dispatcher.connect()

        # Another request connected the same key while this one was connecting.
        raced = self._entries.get(key)
        if raced:
            logger.debug(f"Discarding duplicate dispatcher {key}")
            await dispatcher.aclose()
            self._entries.move_to_end(key)
            return raced[0]

        self._entries[key] = (dispatcher, now)

        for _ in range(self.policy.surplus(len(self._entries))):
            oldest = next(iter(self._entries))
            await self._drop(oldest)
        return dispatcher

    async def invalidate(self, conversation_id: str) -> int:
        """Drops every cached dispatcher for a conversation (e.g. after it gains a token)."""
        keys = [key for key in self._entries if key[2] == conversation_id]
        for key in keys:
            await self._drop(key)
        return len(keys)

    async def clear(self):
        for key in list(self._entries):
            await self._drop(key)

    async def _drop(self, key: CacheKey):
        dispatcher, _ = self._entries.pop(key)
        logger.debug(f"Evicting dispatcher {key}")
        await dispatcher.aclose()


# Globally accessible instance
dispatcher_cache = DispatcherCache()
