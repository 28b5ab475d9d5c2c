from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteFlowDB:
    def __init__(self, db_path: str, *, timeout: float = 30.0) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on exit.

        ``immediate`` takes the write lock up front so a read-then-write waits
        for concurrent writers instead of failing with ``database is locked``.
        """
        conn = self._connect()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS telehealth_flows (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL,
                  category_id TEXT NOT NULL,
                  current_status TEXT NOT NULL,
                  version INTEGER NOT NULL,
                  document_json TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS flow_state_transitions (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL REFERENCES telehealth_flows(id),
                  from_status TEXT,
                  to_status TEXT NOT NULL,
                  transition_data_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS categories (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  description TEXT,
                  active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS products (
                  id TEXT PRIMARY KEY,
                  category_id TEXT NOT NULL REFERENCES categories(id),
                  name TEXT NOT NULL,
                  description TEXT,
                  price REAL NOT NULL,
                  active INTEGER NOT NULL DEFAULT 1,
                  inventory_count INTEGER,
                  display_order INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscription_durations (
                  id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  duration_months INTEGER,
                  discount_percent REAL NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS form_submissions (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL,
                  patient_id TEXT NOT NULL,
                  form_data_json TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS consultations (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL,
                  patient_id TEXT NOT NULL,
                  provider_id TEXT,
                  form_submission_id TEXT NOT NULL,
                  status TEXT NOT NULL,
                  provider_notes TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS orders (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL,
                  patient_id TEXT NOT NULL,
                  provider_id TEXT,
                  consultation_id TEXT,
                  status TEXT NOT NULL,
                  order_type TEXT NOT NULL,
                  items_json TEXT NOT NULL,
                  total_amount REAL NOT NULL,
                  currency TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS invoices (
                  id TEXT PRIMARY KEY,
                  flow_id TEXT NOT NULL,
                  patient_id TEXT NOT NULL,
                  order_id TEXT NOT NULL REFERENCES orders(id),
                  amount REAL NOT NULL,
                  currency TEXT NOT NULL,
                  status TEXT NOT NULL,
                  due_date TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_flows_patient_created
                  ON telehealth_flows(patient_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_flow_transitions_flow_created
                  ON flow_state_transitions(flow_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_products_category_order
                  ON products(category_id, display_order);
                CREATE INDEX IF NOT EXISTS idx_orders_flow
                  ON orders(flow_id);
                CREATE INDEX IF NOT EXISTS idx_invoices_order
                  ON invoices(order_id);
                """
            )
