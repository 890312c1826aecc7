# backend/tests/unit/test_quantity_service.py

import json
import pytest
from unittest.mock import AsyncMock

from shopchat.models.conversation import QuantityIncrementRule
from shopchat.services.quantity_service import (
    IncrementResolver,
    QuantityInterceptor,
    QuantityValidationError,
    adjust_quantity,
    id_candidates,
)

VARIANT_1 = "gid://shopify/ProductVariant/1"
VARIANT_2 = "gid://shopify/ProductVariant/2"


def _rule(entity_id, increment, entity_type="variant", title="Coil Pack"):
    return QuantityIncrementRule(
        entity_id=entity_id, increment=increment, entity_type=entity_type, product_title=title
    )


def _rules_by_id(rules):
    """side_effect for `lookup_increment(candidates)` backed by a dict."""
    def lookup(candidates):
        for candidate in candidates:
            if candidate in rules:
                return rules[candidate]
        return None
    return lookup


# --- adjust_quantity ---

@pytest.mark.parametrize("quantity, increment, expected", [
    (3, 5, 5),
    (12, 5, 15),
    (5, 5, 5),
    (0, 5, 5),
    (10, 5, 10),
    (7, 1, 7),
])
def test_adjust_quantity_examples(quantity, increment, expected):
    assert adjust_quantity(quantity, increment) == expected


def test_adjust_quantity_is_smallest_valid_multiple():
    for increment in range(1, 13):
        for quantity in range(0, 40):
            adjusted = adjust_quantity(quantity, increment)
            assert adjusted % increment == 0
            assert adjusted >= quantity
            assert adjusted >= increment
            assert adjusted - max(quantity, increment) < increment


def test_id_candidates_expand_gids_and_numeric_ids():
    assert id_candidates("gid://shopify/ProductVariant/42?variant=1") == ["gid://shopify/ProductVariant/42", "42"]
    assert id_candidates("42") == ["42", "gid://shopify/ProductVariant/42", "gid://shopify/Product/42"]
    assert id_candidates(None) == []


# --- QuantityInterceptor ---

@pytest.mark.asyncio
async def test_interceptor_rounds_up_added_items(mock_store):
    mock_store.lookup_increment.side_effect = _rules_by_id({VARIANT_1: _rule(VARIANT_1, 5)})
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    arguments = {"add_items": [
        {"product_variant_id": VARIANT_1, "quantity": 3},
        {"product_variant_id": VARIANT_2, "quantity": 2},
    ]}

    adjustments = await interceptor.apply("update_cart", arguments)

    assert arguments["add_items"][0]["quantity"] == 5
    assert arguments["add_items"][1]["quantity"] == 2
    assert adjustments == [{"id": VARIANT_1, "requested": 3, "adjusted": 5, "increment": 5}]


@pytest.mark.asyncio
async def test_interceptor_accepts_field_name_variants(mock_store):
    mock_store.lookup_increment.side_effect = _rules_by_id({"gid://shopify/ProductVariant/7": _rule("7", 6)})
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    arguments = {"lines": [{"merchandiseId": "7", "quantity": 8}]}

    await interceptor.apply("update_cart", arguments)

    assert arguments["lines"][0]["quantity"] == 12


@pytest.mark.asyncio
async def test_interceptor_leaves_exact_multiples_alone(mock_store):
    mock_store.lookup_increment.side_effect = _rules_by_id({VARIANT_1: _rule(VARIANT_1, 5)})
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    arguments = {"add_items": [{"variant_id": VARIANT_1, "quantity": 10}]}

    assert await interceptor.apply("update_cart", arguments) == []
    assert arguments["add_items"][0]["quantity"] == 10


@pytest.mark.asyncio
async def test_interceptor_missing_identifier_is_fatal(mock_store):
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    arguments = {"add_items": [{"product_variant_id": VARIANT_1, "quantity": 1}, {"quantity": 2}]}

    with pytest.raises(QuantityValidationError):
        await interceptor.apply("update_cart", arguments)
    mock_store.lookup_increment.assert_not_awaited()


@pytest.mark.asyncio
async def test_interceptor_lookup_failure_keeps_quantity(mock_store):
    mock_store.lookup_increment.side_effect = RuntimeError("database unavailable")
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    arguments = {"add_items": [{"product_variant_id": VARIANT_1, "quantity": 3}]}

    assert await interceptor.apply("update_cart", arguments) == []
    assert arguments["add_items"][0]["quantity"] == 3


@pytest.mark.asyncio
async def test_interceptor_ignores_line_updates_and_other_tools(mock_store):
    interceptor = QuantityInterceptor(IncrementResolver(store=mock_store))
    line_update = {"lines": [{"line_item_id": "gid://shopify/CartLine/1", "quantity": 0}]}

    assert await interceptor.apply("update_cart", line_update) == []
    assert await interceptor.apply("get_cart", {"add_items": [{"quantity": 2}]}) == []
    assert line_update["lines"][0]["quantity"] == 0


# --- IncrementResolver ---

@pytest.mark.asyncio
async def test_validate_without_rule_is_unrestricted(mock_store):
    result = await IncrementResolver(store=mock_store).validate(3, product_id="gid://shopify/Product/5")

    assert result["valid"] is True
    assert result["increment"] == 1
    assert result["adjusted_quantity"] == 3


@pytest.mark.asyncio
async def test_validate_matches_rule_by_title(mock_store):
    mock_store.lookup_increment_by_title.return_value = _rule("gid://shopify/Product/3", 6, "product", "Coil Pack")

    result = await IncrementResolver(store=mock_store).validate("4", title="Coil Pack")

    assert result["valid"] is False
    assert result["increment"] == 6
    assert result["adjusted_quantity"] == 6
    assert "multiples of 6" in result["message"]
    mock_store.lookup_increment_by_title.assert_awaited_with("Coil Pack")


@pytest.mark.asyncio
async def test_validate_falls_back_to_catalogue_search(mock_store):
    product_id = "gid://shopify/Product/9"
    mock_store.lookup_increment.side_effect = _rules_by_id({product_id: _rule(product_id, 5, "product", "Widget")})
    search_result = {"content": [{"type": "text", "text": json.dumps({"products": [{
        "product_id": product_id,
        "title": "Widget",
        "variants": [{"variant_id": "gid://shopify/ProductVariant/91"}],
    }]})}]}
    catalog_search = AsyncMock(return_value=search_result)

    result = await IncrementResolver(store=mock_store, catalog_search=catalog_search).validate(7, title="widget")

    catalog_search.assert_awaited_once_with("widget")
    assert result["increment"] == 5
    assert result["adjusted_quantity"] == 10


@pytest.mark.asyncio
async def test_catalogue_search_failure_means_no_rule(mock_store):
    catalog_search = AsyncMock(side_effect=RuntimeError("storefront down"))
    resolver = IncrementResolver(store=mock_store, catalog_search=catalog_search)

    assert await resolver.find_rule(title="Widget") is None
