from __future__ import annotations

import pytest

from telehealth_flow_core import CategoryNotFound, CategoryProductCatalog, NotFound


@pytest.fixture
def catalog(catalog_store) -> CategoryProductCatalog:
    return CategoryProductCatalog(catalog_store)


def test_recommendations_list_available_products_in_display_order(catalog):
    items = catalog.get_product_recommendations("weight-mgmt")

    assert [item["product"]["id"] for item in items] == ["prod-7", "prod-42"]
    assert items[1]["product"] == {
        "id": "prod-42",
        "name": "GLP-1 Program",
        "price": 299.0,
        "description": "Monthly GLP-1 prescription",
    }
    assert items[0]["recommendation_reason"] == "Available for Weight Management."


def test_recommendations_for_unknown_or_inactive_category(catalog):
    with pytest.raises(CategoryNotFound):
        catalog.get_product_recommendations("missing")
    with pytest.raises(NotFound):
        catalog.get_product_recommendations("retired")


def test_pricing_applies_subscription_discount(catalog):
    pricing = catalog.calculate_pricing("prod-42", "dur-quarterly")

    assert pricing == {
        "base_price": 299.0,
        "final_price": 269.1,
        "total_savings": 29.9,
        "subscription_details": {"name": "Quarterly", "discount_percentage": 10.0},
        "currency": "USD",
    }


def test_pricing_without_duration_is_list_price(catalog):
    pricing = catalog.calculate_pricing("prod-7")

    assert pricing["final_price"] == 99.0
    assert pricing["total_savings"] == 0.0
    assert pricing["subscription_details"] is None


def test_pricing_unknown_duration(catalog):
    with pytest.raises(NotFound) as excinfo:
        catalog.calculate_pricing("prod-42", "dur-weekly")
    assert excinfo.value.details == {"subscription_duration_id": "dur-weekly"}


def test_seed_updates_existing_rows(catalog_store, catalog):
    catalog_store.seed({"products": [{"id": "prod-7", "category_id": "weight-mgmt", "name": "Coaching", "price": 79.0}]})

    product = catalog.get_product("prod-7")
    assert product["name"] == "Coaching"
    assert product["price"] == 79.0
