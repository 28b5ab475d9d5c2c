from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import timedelta
from typing import Any

from .database import SQLiteFlowDB
from .errors import NotFound, TransportFailure
from .time_utils import to_iso, utc_now


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _order_row(row: sqlite3.Row) -> dict[str, Any]:
    order = dict(row)
    order["items"] = json.loads(order.pop("items_json"))
    return order


class OrderService:
    _PROGRESSION = {
        "pending": "processing",
        "processing": "shipped",
        "shipped": "delivered",
    }

    def __init__(self, db: SQLiteFlowDB) -> None:
        self._db = db

    def create_order_from_flow(self, flow: dict[str, Any], approval: dict[str, Any]) -> dict[str, Any]:
        pricing = flow.get("pricing_snapshot") or {}
        prescription = approval.get("prescription_data") or {}
        quantity = max(1, int(prescription.get("quantity") or 1))
        unit_price = float(pricing.get("final_price") or 0.0)
        item_name = prescription.get("medication") or approval.get("medication_name") or flow.get("product_id")
        items = [
            {
                "product_id": flow.get("product_id"),
                "name": item_name,
                "quantity": quantity,
                "unit_price": unit_price,
                "total_price": round(unit_price * quantity, 2),
            }
        ]
        now = to_iso(utc_now())
        order = {
            "id": uuid.uuid4().hex,
            "flow_id": flow["id"],
            "patient_id": flow["patient_id"],
            "provider_id": approval.get("provider_id"),
            "consultation_id": flow.get("consultation_id"),
            "status": "pending",
            "order_type": "prescription",
            "items": items,
            "total_amount": round(sum(item["total_price"] for item in items), 2),
            "currency": pricing.get("currency", "USD"),
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO orders (
                      id, flow_id, patient_id, provider_id, consultation_id, status, order_type,
                      items_json, total_amount, currency, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order["id"],
                        order["flow_id"],
                        order["patient_id"],
                        order["provider_id"],
                        order["consultation_id"],
                        order["status"],
                        order["order_type"],
                        _json_dumps(items),
                        order["total_amount"],
                        order["currency"],
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to create order: {exc}") from exc
        return order

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, flow_id, patient_id, provider_id, consultation_id, status, order_type,
                           items_json, total_amount, currency, created_at, updated_at
                    FROM orders
                    WHERE id = ?
                    """,
                    (order_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to read order {order_id}: {exc}") from exc
        return _order_row(row) if row else None

    def void_order(self, order_id: str) -> None:
        self._set_status(order_id, "cancelled")

    def progress_order(self, order_id: str) -> dict[str, Any]:
        order = self.get_order(order_id)
        if not order:
            raise NotFound(f"Order not found: {order_id}", order_id=order_id)
        next_status = self._PROGRESSION.get(order["status"])
        if next_status:
            self._set_status(order_id, next_status)
            order = self.get_order(order_id) or order
        return order

    def _set_status(self, order_id: str, status: str) -> None:
        try:
            with self._db.connection() as conn:
                updated = conn.execute(
                    "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
                    (status, to_iso(utc_now()), order_id),
                ).rowcount
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to update order {order_id}: {exc}") from exc
        if not updated:
            raise NotFound(f"Order not found: {order_id}", order_id=order_id)


class InvoiceService:
    def __init__(self, db: SQLiteFlowDB, *, due_days: int = 7) -> None:
        self._db = db
        self.due_days = due_days

    def create_invoice(self, flow: dict[str, Any], order: dict[str, Any]) -> dict[str, Any]:
        now_dt = utc_now()
        now = to_iso(now_dt)
        invoice = {
            "id": uuid.uuid4().hex,
            "flow_id": flow["id"],
            "patient_id": flow["patient_id"],
            "order_id": order["id"],
            "amount": float(order["total_amount"]),
            "currency": order["currency"],
            "status": "pending_payment",
            "due_date": to_iso(now_dt + timedelta(days=self.due_days)),
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO invoices (
                      id, flow_id, patient_id, order_id, amount, currency, status, due_date,
                      created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invoice["id"],
                        invoice["flow_id"],
                        invoice["patient_id"],
                        invoice["order_id"],
                        invoice["amount"],
                        invoice["currency"],
                        invoice["status"],
                        invoice["due_date"],
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to create invoice: {exc}") from exc
        return invoice

    def get_invoice(self, invoice_id: str) -> dict[str, Any] | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, flow_id, patient_id, order_id, amount, currency, status, due_date,
                           created_at, updated_at
                    FROM invoices
                    WHERE id = ?
                    """,
                    (invoice_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to read invoice {invoice_id}: {exc}") from exc
        return dict(row) if row else None

    def void_invoice(self, invoice_id: str) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute(
                    "UPDATE invoices SET status = 'void', updated_at = ? WHERE id = ?",
                    (to_iso(utc_now()), invoice_id),
                )
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to void invoice {invoice_id}: {exc}") from exc
