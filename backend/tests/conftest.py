from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from flow_store import (  # noqa: E402
    IntakeStore,
    InvoiceService,
    OrderService,
    SQLiteCatalogStore,
    SQLiteFlowDB,
    SQLiteFlowStore,
)
from telehealth_flow_core import CategoryProductCatalog, TelehealthFlowOrchestrator  # noqa: E402

CATALOG_SEED = {
    "categories": [
        {"id": "weight-mgmt", "name": "Weight Management", "description": "Medical weight programs"},
        {"id": "dermatology", "name": "Dermatology"},
        {"id": "retired", "name": "Retired Category", "active": False},
    ],
    "products": [
        {
            "id": "prod-42",
            "category_id": "weight-mgmt",
            "name": "GLP-1 Program",
            "description": "Monthly GLP-1 prescription",
            "price": 299.0,
            "inventory_count": 25,
            "display_order": 1,
        },
        {
            "id": "prod-7",
            "category_id": "weight-mgmt",
            "name": "Nutrition Coaching",
            "description": "Coaching sessions",
            "price": 99.0,
            "display_order": 0,
        },
        {
            "id": "prod-out",
            "category_id": "weight-mgmt",
            "name": "Sold Out Kit",
            "price": 49.0,
            "inventory_count": 0,
            "display_order": 2,
        },
        {
            "id": "prod-inactive",
            "category_id": "weight-mgmt",
            "name": "Discontinued Plan",
            "price": 10.0,
            "active": False,
        },
        {
            "id": "prod-derm",
            "category_id": "dermatology",
            "name": "Tretinoin Cream",
            "price": 45.0,
        },
    ],
    "subscription_durations": [
        {"id": "dur-monthly", "name": "Monthly", "duration_months": 1, "discount_percent": 0},
        {"id": "dur-quarterly", "name": "Quarterly", "duration_months": 3, "discount_percent": 10},
    ],
}


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    seed_path = tmp_path / "catalog.json"
    seed_path.write_text(json.dumps(CATALOG_SEED), encoding="utf-8")
    monkeypatch.setenv("TELEHEALTH_DB_PATH", str(tmp_path / "telehealth-test.sqlite"))
    monkeypatch.setenv("TELEHEALTH_CATALOG_SEED_PATH", str(seed_path))
    monkeypatch.setenv("TELEHEALTH_FLOW_BACKEND", "sqlite")
    monkeypatch.setenv("TELEHEALTH_LOG_JSON", "false")
    monkeypatch.delenv("TELEHEALTH_AUTO_ASSIGN_PROVIDER", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def db(tmp_path) -> SQLiteFlowDB:
    return SQLiteFlowDB(str(tmp_path / "flows.sqlite"))


@pytest.fixture
def catalog_store(db) -> SQLiteCatalogStore:
    store = SQLiteCatalogStore(db)
    store.seed(CATALOG_SEED)
    return store


@pytest.fixture
def flow_store(db) -> SQLiteFlowStore:
    return SQLiteFlowStore(db)


@pytest.fixture
def make_orchestrator(db, catalog_store, flow_store) -> Callable[..., TelehealthFlowOrchestrator]:
    def _make(**overrides) -> TelehealthFlowOrchestrator:
        kwargs = {
            "store": flow_store,
            "catalog": CategoryProductCatalog(catalog_store),
            "intake": IntakeStore(db),
            "orders": OrderService(db),
            "invoices": InvoiceService(db),
        }
        kwargs.update(overrides)
        return TelehealthFlowOrchestrator(**kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> TelehealthFlowOrchestrator:
    return make_orchestrator()


@pytest.fixture
def flow_at_review(orchestrator) -> Callable[..., str]:
    """Drive a new flow to intake_submitted and return its id."""

    def _make(patient_id: str = "patient-1", duration_id: str | None = "dur-quarterly") -> str:
        started = orchestrator.initialize_flow(patient_id=patient_id, category_id="weight-mgmt")
        flow_id = started.flow.id
        assert orchestrator.process_product_selection(flow_id, "prod-42", duration_id).success
        assert orchestrator.process_intake_form(flow_id, {"weight_lbs": 210, "allergies": []}).success
        return flow_id

    return _make
