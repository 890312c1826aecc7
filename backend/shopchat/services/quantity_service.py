# /shopchat/services/quantity_service.py

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from shopchat.models.conversation import QuantityIncrementRule
from shopchat.services.db_service import db_service
from shopchat.services.mcp_client import decode_tool_payload
from shopchat.utils.metrics import quantity_adjustments_counter

# Purchase-quantity increments: some products may only be ordered in multiples
# of N. Cart mutations are rewritten before they reach the storefront so every
# requested quantity is rounded up to the next valid multiple.

logger = logging.getLogger(__name__)

CART_MUTATION_TOOLS = {"update_cart", "add_to_cart", "add_items_to_cart"}
CATALOG_SEARCH_TOOL = "search_shop_catalog"

ITEM_LIST_KEYS = ("add_items", "lines", "items", "line_items")
VARIANT_ID_KEYS = ("product_variant_id", "variant_id", "merchandise_id", "merchandiseId", "variantId")
PRODUCT_ID_KEYS = ("product_id", "productId")
LINE_ID_KEYS = ("line_item_id", "line_id", "lineId")

CatalogSearch = Callable[[str], Awaitable[Any]]


class QuantityValidationError(Exception):
    """A cart line cannot be checked because it carries no product or variant id."""


def adjust_quantity(quantity: int, increment: int) -> int:
    """Smallest multiple of `increment` that is >= both `quantity` and `increment`."""
    if increment < 1:
        return quantity
    target = max(quantity, increment)
    return -(-target // increment) * increment


def id_candidates(entity_id: Optional[str]) -> List[str]:
    """A Shopify id as given plus its GID / numeric alternatives."""
    if not entity_id:
        return []
    entity_id = str(entity_id).split("?")[0].strip()
    candidates = [entity_id]
    if entity_id.startswith("gid://"):
        candidates.append(entity_id.rsplit("/", 1)[-1])
    elif entity_id.isdigit():
        candidates.append(f"gid://shopify/ProductVariant/{entity_id}")
        candidates.append(f"gid://shopify/Product/{entity_id}")
    return candidates


def _first_value(item: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value)
    return None


def _coerce_quantity(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 1


class IncrementResolver:
    """
    Finds the increment rule for a product/variant. Direct store lookups come
    first; when nothing matches, the product is resolved through the storefront
    catalogue search and the lookup is retried against what it returned.
    """

    def __init__(self, store=db_service, catalog_search: Optional[CatalogSearch] = None):
        self.store = store
        self.catalog_search = catalog_search

    async def find_rule(
        self,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        title: Optional[str] = None,
        prefer_variant: bool = False,
    ) -> Optional[QuantityIncrementRule]:
        order = [variant_id, product_id] if prefer_variant else [product_id, variant_id]
        rule = await self._lookup(order, title)
        if rule:
            return rule

        query = title or product_id or variant_id
        if not query or not self.catalog_search:
            return None

        for product in await self._search_products(query):
            rule = await self._lookup(
                [*product["variant_ids"], product["product_id"]] if prefer_variant
                else [product["product_id"], *product["variant_ids"]],
                product["title"],
            )
            if rule:
                return rule
        return None

    async def validate(
        self,
        quantity: Any,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        requested = _coerce_quantity(quantity)
        rule = await self.find_rule(product_id=product_id, variant_id=variant_id, title=title)
        if not rule:
            return {
                "requested_quantity": requested,
                "increment": 1,
                "valid": True,
                "adjusted_quantity": requested or 1,
                "message": "This product has no quantity restriction.",
            }
        adjusted = adjust_quantity(requested, rule.increment)
        valid = adjusted == requested
        message = (
            f"{requested} is a valid quantity (sold in multiples of {rule.increment})."
            if valid else
            f"This product is sold in multiples of {rule.increment}; {requested} will be rounded up to {adjusted}."
        )
        return {
            "product_id": product_id,
            "variant_id": variant_id,
            "product_title": rule.product_title or title,
            "requested_quantity": requested,
            "increment": rule.increment,
            "valid": valid,
            "adjusted_quantity": adjusted,
            "message": message,
        }

    async def _lookup(self, ids: List[Optional[str]], title: Optional[str]) -> Optional[QuantityIncrementRule]:
        for entity_id in ids:
            candidates = id_candidates(entity_id)
            if candidates:
                rule = await self.store.lookup_increment(candidates)
                if rule:
                    return rule
        if title:
            return await self.store.lookup_increment_by_title(title)
        return None

    async def _search_products(self, query: str) -> List[Dict[str, Any]]:
        try:
            result = await self.catalog_search(query)
        except Exception as e:
            logger.warning(f"Catalogue search for '{query}' failed: {e}")
            return []

        payload = decode_tool_payload(result)
        raw_products = payload.get("products") if isinstance(payload, dict) else None
        products = []
        for raw in raw_products or []:
            if not isinstance(raw, dict):
                continue
            variants = raw.get("variants") or []
            products.append({
                "product_id": raw.get("product_id") or raw.get("id"),
                "title": raw.get("title"),
                "variant_ids": [
                    v.get("variant_id") or v.get("id") for v in variants if isinstance(v, dict)
                ],
            })
        return products


class QuantityInterceptor:
    def __init__(self, resolver: IncrementResolver):
        self.resolver = resolver

    def applies_to(self, tool_name: str) -> bool:
        return tool_name in CART_MUTATION_TOOLS

    def _added_items(self, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = []
        for key in ITEM_LIST_KEYS:
            value = arguments.get(key)
            if isinstance(value, list):
                items.extend(item for item in value if isinstance(item, dict))
        # Lines that only reference an existing cart line are updates/removals, not additions.
        return [
            item for item in items
            if not (_first_value(item, LINE_ID_KEYS) and not _first_value(item, VARIANT_ID_KEYS + PRODUCT_ID_KEYS))
        ]

    async def apply(self, tool_name: str, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Rounds every added line's quantity up to its increment, mutating
        `arguments` in place. Returns the adjustments that were made.
        """
        if not self.applies_to(tool_name):
            return []

        items = self._added_items(arguments)
        for index, item in enumerate(items, start=1):
            if not (_first_value(item, VARIANT_ID_KEYS) or _first_value(item, PRODUCT_ID_KEYS)):
                raise QuantityValidationError(f"Line item {index} is missing a product or variant id")

        adjustments = []
        for item in items:
            variant_id = _first_value(item, VARIANT_ID_KEYS)
            product_id = _first_value(item, PRODUCT_ID_KEYS)
            try:
                rule = await self.resolver.find_rule(
                    product_id=product_id, variant_id=variant_id, prefer_variant=True
                )
            except Exception as e:
                logger.warning(f"Increment lookup failed for {variant_id or product_id}, leaving quantity as-is: {e}")
                continue
            if not rule:
                continue

            requested = _coerce_quantity(item.get("quantity", 1))
            adjusted = adjust_quantity(requested, rule.increment)
            if adjusted != requested:
                item["quantity"] = adjusted
                quantity_adjustments_counter.inc()
                logger.info(
                    f"Adjusted quantity for {variant_id or product_id}: {requested} -> {adjusted} "
                    f"(increment {rule.increment})"
                )
                adjustments.append({
                    "id": variant_id or product_id,
                    "requested": requested,
                    "adjusted": adjusted,
                    "increment": rule.increment,
                })
        return adjustments
