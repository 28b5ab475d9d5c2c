from __future__ import annotations

import json
import os
import queue
import re
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
import structlog

from flow_store import (
    FlowStore,
    IntakeStore,
    InvoiceService,
    OrderService,
    PostgRESTFlowStore,
    SQLiteCatalogStore,
    SQLiteFlowDB,
    SQLiteFlowStore,
)
from log_config import configure_logging
from telehealth_flow_core import (
    TERMINAL_STATES,
    CategoryProductCatalog,
    FlowError,
    FlowResult,
    TelehealthFlowOrchestrator,
)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


configure_logging(
    os.getenv("TELEHEALTH_LOG_LEVEL", "INFO"),
    json_logs=_env_flag("TELEHEALTH_LOG_JSON", "true"),
)
logger = structlog.get_logger(__name__)

_STATUS_CODES = {
    "not_found": 404,
    "category_not_found": 404,
    "validation_failed": 422,
    "invalid_state_transition": 409,
    "concurrent_modification": 409,
    "side_effect_failure": 502,
    "transport_failure": 503,
}


class InitializeFlowRequest(BaseModel):
    patient_id: str
    category_id: str
    product_id: str | None = None


class ProductSelectionRequest(BaseModel):
    product_id: str
    subscription_duration_id: str | None = None


class IntakeFormRequest(BaseModel):
    form_data: dict[str, Any] = Field(default_factory=dict)


class ProviderAssignmentRequest(BaseModel):
    provider_id: str


class ConsultationDecisionRequest(BaseModel):
    approved: bool
    provider_id: str | None = None
    notes: str | None = None
    prescription_data: dict[str, Any] = Field(default_factory=dict)


class CancelFlowRequest(BaseModel):
    reason: str | None = None


class CompleteFlowRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class TelehealthApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "TELEHEALTH_DB_PATH",
            str(Path(__file__).resolve().parent / "telehealth.sqlite"),
        )
        timeout = float(os.getenv("TELEHEALTH_TIMEOUT_SECONDS", "30"))
        self.db = SQLiteFlowDB(db_path, timeout=timeout)
        self.store = self._build_store(timeout)

        self.catalog_store = SQLiteCatalogStore(self.db)
        seed_path = os.getenv("TELEHEALTH_CATALOG_SEED_PATH")
        if seed_path:
            self.catalog_store.seed_from_file(seed_path)

        self.catalog = CategoryProductCatalog(self.catalog_store)
        self.intake = IntakeStore(self.db)
        self.orders = OrderService(self.db)
        self.invoices = InvoiceService(self.db, due_days=int(os.getenv("TELEHEALTH_INVOICE_DUE_DAYS", "7")))
        self.orchestrator = TelehealthFlowOrchestrator(
            store=self.store,
            catalog=self.catalog,
            intake=self.intake,
            orders=self.orders,
            invoices=self.invoices,
            auto_assign_provider_id=(os.getenv("TELEHEALTH_AUTO_ASSIGN_PROVIDER") or "").strip() or None,
        )

    def _build_store(self, timeout: float) -> FlowStore:
        backend = os.getenv("TELEHEALTH_FLOW_BACKEND", "sqlite").strip().lower()
        if backend == "supabase":
            supabase_url = (os.getenv("SUPABASE_URL") or "").strip()
            supabase_key = (os.getenv("SUPABASE_SERVICE_KEY") or "").strip()
            if not supabase_url or not supabase_key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase backend.")
            logger.info("flow_store_selected", backend="supabase")
            return PostgRESTFlowStore(supabase_url, supabase_key, timeout=timeout)
        if backend != "sqlite":
            raise RuntimeError(f"Unsupported TELEHEALTH_FLOW_BACKEND: {backend}")
        logger.info("flow_store_selected", backend="sqlite", path=self.db.path)
        return SQLiteFlowStore(self.db)


container = TelehealthApp()
app = FastAPI(title="Telehealth Flow Service")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _failure_response(error: FlowError) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_CODES.get(error.code, 500),
        content={"status": "failure", "result": {"error": error.as_dict()}},
    )


def _flow_response(result: FlowResult) -> Any:
    if not result.success:
        return _failure_response(result.error)
    return {"status": "success", "result": result.as_envelope()}


@app.get("/health")
def health():
    return {"ok": True, "store": type(container.store).__name__}


@app.post("/flows")
def initialize_flow(payload: InitializeFlowRequest):
    return _flow_response(
        container.orchestrator.initialize_flow(
            patient_id=payload.patient_id,
            category_id=payload.category_id,
            product_id=payload.product_id,
        )
    )


@app.get("/flows")
def list_flows(patient_id: str | None = None, limit: int = 50):
    try:
        flows = container.store.list_flows(patient_id=patient_id, limit=limit)
    except FlowError as exc:
        return _failure_response(exc)
    return {"status": "success", "result": {"items": flows}}


@app.get("/flows/{flow_id}")
def get_flow(flow_id: str):
    return _flow_response(container.orchestrator.get_flow(flow_id))


@app.get("/flows/{flow_id}/transitions")
def list_flow_transitions(flow_id: str):
    try:
        items = container.store.list_transitions(flow_id)
    except FlowError as exc:
        return _failure_response(exc)
    return {"status": "success", "result": {"items": items}}


@app.post("/flows/{flow_id}/product")
def select_product(flow_id: str, payload: ProductSelectionRequest):
    return _flow_response(
        container.orchestrator.process_product_selection(
            flow_id,
            payload.product_id,
            payload.subscription_duration_id,
        )
    )


@app.post("/flows/{flow_id}/intake")
def submit_intake(flow_id: str, payload: IntakeFormRequest):
    return _flow_response(container.orchestrator.process_intake_form(flow_id, payload.form_data))


@app.post("/flows/{flow_id}/provider")
def assign_provider(flow_id: str, payload: ProviderAssignmentRequest):
    return _flow_response(container.orchestrator.assign_provider(flow_id, payload.provider_id))


@app.post("/flows/{flow_id}/consultation")
def decide_consultation(flow_id: str, payload: ConsultationDecisionRequest):
    return _flow_response(
        container.orchestrator.process_consultation_approval(flow_id, payload.model_dump())
    )


@app.post("/flows/{flow_id}/cancel")
def cancel_flow(flow_id: str, payload: CancelFlowRequest | None = None):
    reason = payload.reason if payload else None
    return _flow_response(container.orchestrator.cancel_flow(flow_id, reason))


@app.post("/flows/{flow_id}/complete")
def complete_flow(flow_id: str, payload: CompleteFlowRequest | None = None):
    data = payload.data if payload else None
    return _flow_response(container.orchestrator.complete_flow(flow_id, data or None))


@app.get("/flows/{flow_id}/events")
def flow_events(flow_id: str, max_events: int | None = None, keepalive_seconds: float = 15.0):
    updates: queue.Queue[dict[str, Any] | None] = queue.Queue()
    try:
        unsubscribe = container.store.subscribe(flow_id, updates.put)
    except FlowError as exc:
        return _failure_response(exc)

    snapshot = updates.get_nowait()
    if snapshot is None:
        unsubscribe()
        return JSONResponse(
            status_code=404,
            content={
                "status": "failure",
                "result": {"error": {"code": "not_found", "message": f"Flow not found: {flow_id}"}},
            },
        )

    def _stream():
        sent = 1
        known_version = snapshot.get("version")
        try:
            yield _emit_sse("snapshot", snapshot)
            if snapshot.get("current_status") in TERMINAL_STATES:
                return
            while max_events is None or sent < max_events:
                try:
                    record = updates.get(timeout=keepalive_seconds)
                except queue.Empty:
                    try:
                        container.store.refresh(flow_id, known_version)
                    except FlowError as exc:
                        logger.warning("flow_stream_refresh_failed", flow_id=flow_id, code=exc.code, error=exc.message)
                        yield _emit_sse("error", exc.as_dict())
                        return
                    yield ": keepalive\n\n"
                    continue
                if record is None:
                    yield _emit_sse("error", {"code": "not_found", "flow_id": flow_id})
                    return
                if record.get("version") == known_version:
                    continue
                known_version = record.get("version")
                yield _emit_sse("flow", record)
                sent += 1
                if record.get("current_status") in TERMINAL_STATES:
                    return
        finally:
            unsubscribe()

    return StreamingResponse(_stream(), media_type="text/event-stream")


@app.get("/categories/{category_id}/recommendations")
def product_recommendations(category_id: str):
    try:
        items = container.catalog.get_product_recommendations(category_id)
    except FlowError as exc:
        return _failure_response(exc)
    return {"status": "success", "result": {"items": items}}


@app.get("/products/{product_id}/pricing")
def product_pricing(product_id: str, subscription_duration_id: str | None = None):
    try:
        pricing = container.catalog.calculate_pricing(product_id, subscription_duration_id)
    except FlowError as exc:
        return _failure_response(exc)
    return {"status": "success", "result": pricing}


@app.post("/orders/{order_id}/progress")
def progress_order(order_id: str):
    try:
        order = container.orders.progress_order(order_id)
    except FlowError as exc:
        return _failure_response(exc)
    return {"status": "success", "result": order}
