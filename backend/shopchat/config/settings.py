# /shopchat/config/settings.py

from typing import Annotated, Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Runtime
    environment: str = "production"
    log_level: str = "INFO"
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    cors_allowed_origins: str = ""
    api_key: str | None = None

    # MongoDB
    mongo_atlas_uri: str = "mongodb://localhost:27017/shopchat"
    max_pool_size: int = 10
    min_pool_size: int = 1

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Anthropic
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 2000
    max_system_prompt_length: int = 8000
    default_prompt_type: str = "standard_assistant"

    # Shop
    shop_domain: str = "https://example.myshopify.com"
    shop_id: str | None = None
    storefront_domain_override: str | None = None
    mcp_storefront_url: str | None = None
    mcp_customer_url: str | None = None
    customer_account_url_overrides: Dict[str, str] = {}
    shopify_storefront_access_token: str | None = None
    shopify_admin_access_token: str | None = None
    shopify_api_version: str = "2025-07"

    # Customer account OAuth
    customer_account_client_id: str | None = None
    oauth_redirect_uri: str = "https://localhost:8000/api/v1/auth/callback"
    oauth_scopes: str = "openid email customer-account-api:full"
    code_verifier_ttl_minutes: int = 10

    # Conversation engine
    max_tool_iterations: int = 5
    tool_call_timeout_seconds: float = 20.0
    history_limit: int = 10
    disabled_tools: Annotated[List[str], NoDecode] = Field(default_factory=list)
    dispatcher_cache_max_entries: int = 256
    dispatcher_cache_ttl_seconds: int = 900

    # WhatsApp
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_verify_token: str = "change-me"
    whatsapp_app_secret: str = "change-me"
    order_form_url: str | None = None
    order_form_filename: str = "order-form.pdf"

    # ---------------- Validators ---------------- #

    @field_validator("disabled_tools", mode="before")
    @classmethod
    def parse_disabled_tools(cls, v):
        """Accepts a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [name.strip() for name in v.split(",") if name.strip()]
        return v

    @field_validator("max_tool_iterations")
    @classmethod
    def iterations_must_be_positive(cls, v):
        if v < 1:
            raise ValueError("MAX_TOOL_ITERATIONS must be at least 1")
        return v


settings = Settings()
