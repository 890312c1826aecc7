# /shopchat/services/auth_service.py

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from shopchat.config import strings
from shopchat.config.settings import settings
from shopchat.models.conversation import CustomerToken
from shopchat.models.tools import ToolErrorType, ToolResult
from shopchat.services.cache_service import CacheService, cache_service
from shopchat.services.db_service import db_service
from shopchat.services.shopify_service import (
    ShopifyService,
    normalize_storefront_domain,
    shop_hostname,
    shopify_service,
)
from shopchat.utils.metrics import auth_escalations_counter

# Customer-account authorization: when a customer tool answers 401 the turn is
# suspended with an authorization link; the OAuth callback later stores a token
# against the conversation and the next turn picks it up.

logger = logging.getLogger(__name__)

CUSTOMER_ACCOUNT_URL_TTL = 24 * 60 * 60


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ESCALATION_ISSUED = "escalation_issued"
    AUTHORIZED = "authorized"


class AuthConfigurationError(Exception):
    """The shop is not set up for customer-account authorization."""


class TokenExchangeError(Exception):
    """The OAuth callback could not be turned into an access token."""


class CustomerAccountResolver:
    """Resolves a shop's customer-account base URL: cache, then override, then live lookup."""

    def __init__(self, cache: CacheService = cache_service, shopify: ShopifyService = shopify_service):
        self.cache = cache
        self.shopify = shopify

    def _cache_key(self, shop_domain: str) -> str:
        return f"customer_account_url:{shop_hostname(shop_domain)}"

    async def resolve(self, shop_domain: str) -> Optional[str]:
        cached = await self.cache.get(self._cache_key(shop_domain))
        if cached:
            return cached

        override = settings.customer_account_url_overrides.get(shop_hostname(shop_domain))
        if override:
            logger.info(f"Using configured customer account URL for {shop_domain}")
            return normalize_storefront_domain(override)

        account_url = await self.shopify.get_customer_account_url(shop_domain)
        if account_url:
            await self.cache.set(self._cache_key(shop_domain), account_url, ttl=CUSTOMER_ACCOUNT_URL_TTL)
        return account_url


class AuthorizationUrlBuilder:
    """Builds PKCE authorization URLs and remembers the state needed by the callback."""

    def __init__(self, store=db_service):
        self.store = store

    @staticmethod
    def _code_challenge(verifier: str) -> str:
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    async def generate(self, conversation_id: str, shop_id: str, customer_account_url: str) -> Dict[str, str]:
        if not settings.customer_account_client_id:
            raise AuthConfigurationError("CUSTOMER_ACCOUNT_CLIENT_ID is not configured")

        verifier = secrets.token_urlsafe(64)
        state = secrets.token_urlsafe(24)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.code_verifier_ttl_minutes)
        stored = await self.store.store_oauth_state(state, {
            "conversation_id": conversation_id,
            "shop_id": shop_id,
            "customer_account_url": customer_account_url,
            "code_verifier": verifier,
        }, expires_at)
        if not stored:
            raise AuthConfigurationError("Could not persist the authorization state")

        params = {
            "client_id": settings.customer_account_client_id,
            "response_type": "code",
            "redirect_uri": settings.oauth_redirect_uri,
            "scope": settings.oauth_scopes,
            "state": state,
            "code_challenge": self._code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        url = f"{customer_account_url}/authentication/oauth/authorize?{urlencode(params)}"
        return {"url": url, "state": state}


class AuthEscalationFlow:
    def __init__(
        self,
        shop_domain: str,
        shop_id: str,
        resolver: Optional[CustomerAccountResolver] = None,
        url_builder: Optional[AuthorizationUrlBuilder] = None,
    ):
        self.shop_domain = shop_domain
        self.shop_id = shop_id
        self.resolver = resolver or CustomerAccountResolver()
        self.url_builder = url_builder or AuthorizationUrlBuilder()

    async def escalate(self, conversation_id: str) -> ToolResult:
        """Returns `auth_required` carrying the authorization URL, or `auth_error`."""
        account_url = await self.resolver.resolve(self.shop_domain)
        if not account_url:
            logger.error(f"Customer account URL not available for conversation {conversation_id}")
            auth_escalations_counter.labels(outcome="auth_error").inc()
            return ToolResult.failure(ToolErrorType.AUTH_ERROR, strings.AUTH_CONFIG_ERROR)

        try:
            auth = await self.url_builder.generate(conversation_id, self.shop_id, account_url)
        except Exception as e:
            logger.error(f"Failed to generate authorization URL: {e}", exc_info=True)
            auth_escalations_counter.labels(outcome="auth_error").inc()
            return ToolResult.failure(ToolErrorType.AUTH_ERROR, strings.AUTH_FAILED_TO_START.format(error=e))

        logger.info(f"Authorization required for conversation {conversation_id}")
        auth_escalations_counter.labels(outcome="auth_required").inc()
        return ToolResult.failure(ToolErrorType.AUTH_REQUIRED, auth["url"])


class OAuthCallbackHandler:
    """Exchanges an authorization code for a customer token and stores it."""

    def __init__(self, store=db_service, http_client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))

    async def exchange(self, code: str, state: str) -> Tuple[str, CustomerToken]:
        record: Optional[Dict[str, Any]] = await self.store.pop_oauth_state(state)
        if not record:
            raise TokenExchangeError("Unknown or expired authorization state")

        token_url = f"{record['customer_account_url']}/authentication/oauth/token"
        try:
            resp = await self.http_client.post(token_url, data={
                "grant_type": "authorization_code",
                "client_id": settings.customer_account_client_id,
                "redirect_uri": settings.oauth_redirect_uri,
                "code": code,
                "code_verifier": record["code_verifier"],
            })
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e

        if resp.status_code >= 400:
            raise TokenExchangeError(f"Token exchange failed: {resp.status_code} {resp.text[:300]}")

        payload = resp.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise TokenExchangeError("Token response did not include an access token")

        conversation_id = record["conversation_id"]
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload.get("expires_in", 3600)))
        await self.store.store_token(conversation_id, access_token, expires_at)
        logger.info(f"Stored customer token for conversation {conversation_id}")
        return conversation_id, CustomerToken(
            conversation_id=conversation_id, access_token=access_token, expires_at=expires_at
        )


# Globally accessible instances
customer_account_resolver = CustomerAccountResolver()
oauth_callback_handler = OAuthCallbackHandler()
