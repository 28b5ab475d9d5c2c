from __future__ import annotations

from typing import Any

import structlog

from flow_store.catalog_store import SQLiteCatalogStore

from .errors import CategoryNotFound, NotFound

logger = structlog.get_logger(__name__)


class CategoryProductCatalog:
    currency = "USD"

    def __init__(self, store: SQLiteCatalogStore) -> None:
        self._store = store

    def get_category(self, category_id: str) -> dict[str, Any]:
        category = self._store.get_category(category_id)
        if not category or not category["active"]:
            raise CategoryNotFound(category_id)
        return category

    def get_product(self, product_id: str) -> dict[str, Any]:
        product = self._store.get_product(product_id)
        if not product:
            raise NotFound(f"Product not found: {product_id}", product_id=product_id)
        return product

    def get_product_recommendations(self, category_id: str) -> list[dict[str, Any]]:
        category = self.get_category(category_id)
        products = self._store.list_active_products(category_id)
        logger.debug("product_recommendations", category_id=category_id, count=len(products))
        return [
            {
                "product": {
                    "id": product["id"],
                    "name": product["name"],
                    "price": product["price"],
                    "description": product["description"],
                },
                "recommendation_reason": f"Available for {category['name']}.",
            }
            for product in products
        ]

    def calculate_pricing(self, product_id: str, subscription_duration_id: str | None = None) -> dict[str, Any]:
        product = self.get_product(product_id)
        base_price = float(product["price"])
        final_price = base_price
        savings = 0.0
        subscription_details = None

        if subscription_duration_id:
            duration = self._store.get_subscription_duration(subscription_duration_id)
            if not duration:
                raise NotFound(
                    f"Subscription duration not found: {subscription_duration_id}",
                    subscription_duration_id=subscription_duration_id,
                )
            discount_percentage = float(duration.get("discount_percent") or 0)
            savings = round(base_price * (discount_percentage / 100), 2)
            final_price = round(base_price - savings, 2)
            subscription_details = {
                "name": duration["name"],
                "discount_percentage": discount_percentage,
            }

        return {
            "base_price": base_price,
            "final_price": final_price,
            "total_savings": savings,
            "subscription_details": subscription_details,
            "currency": self.currency,
        }
