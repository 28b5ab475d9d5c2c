from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .database import SQLiteFlowDB
from .errors import TransportFailure
from .time_utils import to_iso, utc_now


def _product_row(row: sqlite3.Row) -> dict[str, Any]:
    product = dict(row)
    product["active"] = bool(product["active"])
    return product


class SQLiteCatalogStore:
    """Categories, products and subscription durations."""

    def __init__(self, db: SQLiteFlowDB) -> None:
        self._db = db

    def get_category(self, category_id: str) -> dict[str, Any] | None:
        row = self._fetch_one(
            "SELECT id, name, description, active FROM categories WHERE id = ?",
            (category_id,),
        )
        if not row:
            return None
        category = dict(row)
        category["active"] = bool(category["active"])
        return category

    def get_product(self, product_id: str) -> dict[str, Any] | None:
        row = self._fetch_one(
            """
            SELECT id, category_id, name, description, price, active, inventory_count, display_order
            FROM products
            WHERE id = ?
            """,
            (product_id,),
        )
        return _product_row(row) if row else None

    def get_subscription_duration(self, duration_id: str) -> dict[str, Any] | None:
        row = self._fetch_one(
            """
            SELECT id, name, duration_months, discount_percent
            FROM subscription_durations
            WHERE id = ?
            """,
            (duration_id,),
        )
        return dict(row) if row else None

    def list_active_products(self, category_id: str) -> list[dict[str, Any]]:
        try:
            with self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, category_id, name, description, price, active, inventory_count, display_order
                    FROM products
                    WHERE category_id = ?
                      AND active = 1
                      AND (inventory_count IS NULL OR inventory_count > 0)
                    ORDER BY display_order ASC, name ASC
                    """,
                    (category_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to list products for {category_id}: {exc}") from exc
        return [_product_row(row) for row in rows]

    def upsert_category(self, category: dict[str, Any]) -> None:
        now = to_iso(utc_now())
        self._execute(
            """
            INSERT INTO categories (id, name, description, active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              name = excluded.name,
              description = excluded.description,
              active = excluded.active,
              updated_at = excluded.updated_at
            """,
            (
                category["id"],
                category["name"],
                category.get("description"),
                1 if category.get("active", True) else 0,
                now,
                now,
            ),
        )

    def upsert_product(self, product: dict[str, Any]) -> None:
        now = to_iso(utc_now())
        self._execute(
            """
            INSERT INTO products (
              id, category_id, name, description, price, active, inventory_count, display_order,
              created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              category_id = excluded.category_id,
              name = excluded.name,
              description = excluded.description,
              price = excluded.price,
              active = excluded.active,
              inventory_count = excluded.inventory_count,
              display_order = excluded.display_order,
              updated_at = excluded.updated_at
            """,
            (
                product["id"],
                product["category_id"],
                product["name"],
                product.get("description"),
                float(product["price"]),
                1 if product.get("active", True) else 0,
                product.get("inventory_count"),
                int(product.get("display_order", 0)),
                now,
                now,
            ),
        )

    def upsert_subscription_duration(self, duration: dict[str, Any]) -> None:
        now = to_iso(utc_now())
        self._execute(
            """
            INSERT INTO subscription_durations (
              id, name, duration_months, discount_percent, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              name = excluded.name,
              duration_months = excluded.duration_months,
              discount_percent = excluded.discount_percent,
              updated_at = excluded.updated_at
            """,
            (
                duration["id"],
                duration["name"],
                duration.get("duration_months"),
                float(duration.get("discount_percent") or 0),
                now,
                now,
            ),
        )

    def seed(self, data: dict[str, Any]) -> None:
        for category in data.get("categories", []):
            self.upsert_category(category)
        for product in data.get("products", []):
            self.upsert_product(product)
        for duration in data.get("subscription_durations", []):
            self.upsert_subscription_duration(duration)

    def seed_from_file(self, path: str) -> None:
        self.seed(json.loads(Path(path).read_text(encoding="utf-8")))

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> sqlite3.Row | None:
        try:
            with self._db.connection() as conn:
                return conn.execute(query, params).fetchone()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Catalog read failed: {exc}") from exc

    def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute(query, params)
        except sqlite3.Error as exc:
            raise TransportFailure(f"Catalog write failed: {exc}") from exc
