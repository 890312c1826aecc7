# /shopchat/routes/admin.py

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request

from shopchat.config.settings import settings
from shopchat.models.api import APIResponse, QuantitySyncRequest
from shopchat.services.db_service import db_service
from shopchat.services.shopify_service import preferred_shop_domain, shopify_service
from shopchat.utils.dependencies import verify_api_key
from shopchat.utils.rate_limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_api_key)]
)


@router.post("/quantity-increments/sync", response_model=APIResponse)
@limiter.limit("5/minute")
async def sync_quantity_increments(request: Request, sync_request: Optional[QuantitySyncRequest] = None):
    """Pulls `custom.quantity_increment` metafields from Shopify into the rule store."""
    shop_domain = preferred_shop_domain(sync_request.shop_domain if sync_request else None)
    try:
        rules = await shopify_service.fetch_quantity_increment_rules(shop_domain)
    except Exception as e:
        logger.error(f"Quantity increment sync failed for {shop_domain}: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=f"Could not fetch quantity increments: {e}")

    upserted = await db_service.upsert_increments(rules)
    logger.info(f"Synced {len(rules)} quantity increment rules for {shop_domain} ({upserted} written)")
    return APIResponse(
        success=True,
        message=f"Synced {len(rules)} quantity increment rules.",
        data={
            "shop_domain": shop_domain,
            "fetched": len(rules),
            "upserted": upserted,
            "products": sum(1 for r in rules if r.entity_type == "product"),
            "variants": sum(1 for r in rules if r.entity_type == "variant"),
        },
        version=settings.api_version,
    )
