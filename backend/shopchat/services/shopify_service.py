# /shopchat/services/shopify_service.py

import logging
from typing import Dict, List, Optional
from urllib.parse import urlparse

import httpx
import tenacity

from shopchat.config.settings import settings
from shopchat.models.conversation import QuantityIncrementRule

logger = logging.getLogger(__name__)

QUANTITY_INCREMENT_NAMESPACE = "custom"
QUANTITY_INCREMENT_KEY = "quantity_increment"


# --- URL Helpers ---

def normalize_storefront_domain(domain_or_url: Optional[str]) -> Optional[str]:
    """Normalizes a bare domain or URL into `scheme://host`; returns None when unusable."""
    if not domain_or_url or not isinstance(domain_or_url, str):
        return None
    trimmed = domain_or_url.strip()
    if not trimmed:
        return None
    candidate = trimmed if trimmed.startswith("http") else f"https://{trimmed}"
    parsed = urlparse(candidate)
    if not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def preferred_shop_domain(domain: Optional[str] = None) -> Optional[str]:
    return (
        normalize_storefront_domain(settings.storefront_domain_override)
        or normalize_storefront_domain(domain)
        or normalize_storefront_domain(settings.shop_domain)
    )


def shop_hostname(domain: str) -> str:
    return urlparse(normalize_storefront_domain(domain) or domain).netloc


def resolve_shop_id(explicit_shop_id: Optional[str], domain: Optional[str]) -> Optional[str]:
    if explicit_shop_id:
        return explicit_shop_id
    normalized = preferred_shop_domain(domain)
    return shop_hostname(normalized) if normalized else None


def storefront_mcp_endpoint(shop_domain: str) -> str:
    if settings.mcp_storefront_url:
        return settings.mcp_storefront_url.strip()
    return f"{normalize_storefront_domain(shop_domain)}/api/mcp"


def customer_mcp_endpoint(customer_account_url: str) -> str:
    if settings.mcp_customer_url:
        return settings.mcp_customer_url.strip()
    return f"{normalize_storefront_domain(customer_account_url)}/customer/api/mcp"


def default_customer_account_url(shop_domain: str) -> str:
    """`shop.myshopify.com` serves customer accounts from `shop.account.myshopify.com`."""
    host = shop_hostname(shop_domain)
    if host.endswith(".myshopify.com") and ".account." not in host:
        host = host[: -len(".myshopify.com")] + ".account.myshopify.com"
    return f"https://{host}"


class ShopifyService:
    def __init__(
        self,
        storefront_token: Optional[str],
        admin_token: Optional[str],
        api_version: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.storefront_token = storefront_token
        self.admin_token = admin_token
        self.api_version = api_version
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=30.0, connect=5.0)
        )

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await func(*args, **kwargs)

    # --- Customer Accounts ---

    async def get_customer_account_url(self, shop_domain: str) -> Optional[str]:
        """Asks the Storefront API where the shop's customer accounts live."""
        gql_query = "query shopCustomerAccountUrl { shop { customerAccountUrl } }"
        try:
            data = await self._execute_storefront_gql_query(shop_domain, gql_query)
        except Exception as e:
            logger.error(f"Error resolving customer account URL for {shop_domain}: {e}")
            return None
        return normalize_storefront_domain((data.get("shop") or {}).get("customerAccountUrl"))

    # --- Quantity Increments ---

    async def fetch_quantity_increment_rules(self, shop_domain: str) -> List[QuantityIncrementRule]:
        """
        Reads `custom.quantity_increment` metafields at product and variant level
        through the Admin API, following pagination.
        """
        gql_query = """
        query($cursor: String, $namespace: String!, $key: String!) {
          products(first: 100, after: $cursor) {
            pageInfo { hasNextPage endCursor }
            edges { node {
              id title
              metafield(namespace: $namespace, key: $key) { value }
              variants(first: 50) { edges { node {
                id
                metafield(namespace: $namespace, key: $key) { value }
              } } }
            } }
          }
        }
        """
        rules: List[QuantityIncrementRule] = []
        cursor = None
        while True:
            data = await self._execute_admin_gql_query(shop_domain, gql_query, {
                "cursor": cursor,
                "namespace": QUANTITY_INCREMENT_NAMESPACE,
                "key": QUANTITY_INCREMENT_KEY,
            })
            products = data.get("products") or {}
            for edge in products.get("edges", []):
                rules.extend(self._parse_increment_rules(edge.get("node") or {}))

            page_info = products.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

        logger.info(f"Fetched {len(rules)} quantity increment rules from {shop_domain}")
        return rules

    # --- Private Helper Methods ---

    def _parse_increment_rules(self, product: Dict) -> List[QuantityIncrementRule]:
        rules = []
        title = product.get("title")
        product_increment = self._parse_increment(product.get("metafield"))
        if product.get("id") and product_increment:
            rules.append(QuantityIncrementRule(
                entity_id=product["id"], increment=product_increment,
                entity_type="product", product_title=title,
            ))
        for edge in (product.get("variants") or {}).get("edges", []):
            variant = edge.get("node") or {}
            variant_increment = self._parse_increment(variant.get("metafield"))
            if variant.get("id") and variant_increment:
                rules.append(QuantityIncrementRule(
                    entity_id=variant["id"], increment=variant_increment,
                    entity_type="variant", product_title=title,
                ))
        return rules

    @staticmethod
    def _parse_increment(metafield: Optional[Dict]) -> Optional[int]:
        if not metafield:
            return None
        try:
            value = int(str(metafield.get("value", "")).strip())
        except ValueError:
            return None
        return value if value >= 1 else None

    async def _execute_storefront_gql_query(self, shop_domain: str, query: str, variables: Optional[Dict] = None) -> Dict:
        url = f"https://{shop_hostname(shop_domain)}/api/{self.api_version}/graphql.json"
        headers = {"Content-Type": "application/json"}
        if self.storefront_token:
            headers["X-Shopify-Storefront-Access-Token"] = self.storefront_token
        resp = await self.resilient_api_call(
            self.http_client.post, url, json={"query": query, "variables": variables or {}}, headers=headers
        )
        resp.raise_for_status()
        return resp.json().get("data") or {}

    async def _execute_admin_gql_query(self, shop_domain: str, query: str, variables: Dict) -> Dict:
        if not self.admin_token:
            raise RuntimeError("SHOPIFY_ADMIN_ACCESS_TOKEN is not configured")
        url = f"https://{shop_hostname(shop_domain)}/admin/api/{self.api_version}/graphql.json"
        headers = {"X-Shopify-Access-Token": self.admin_token, "Content-Type": "application/json"}
        resp = await self.resilient_api_call(
            self.http_client.post, url, json={"query": query, "variables": variables}, headers=headers
        )
        resp.raise_for_status()
        return resp.json().get("data") or {}


# Globally accessible instance
shopify_service = ShopifyService(
    settings.shopify_storefront_access_token,
    settings.shopify_admin_access_token,
    settings.shopify_api_version,
)
