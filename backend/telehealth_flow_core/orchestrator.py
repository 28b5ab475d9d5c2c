from __future__ import annotations

import uuid
from typing import Any, Callable

import structlog

from flow_store.base import FlowStore
from flow_store.billing_store import InvoiceService, OrderService
from flow_store.intake_store import IntakeStore
from flow_store.time_utils import to_iso, utc_now

from .catalog import CategoryProductCatalog
from .errors import (
    FlowError,
    InvalidStateTransition,
    NotFound,
    SideEffectFailure,
    UnexpectedFailure,
    ValidationFailure,
)
from .lifecycle import FlowLifecycle, history_entry
from .models import FlowResult, FlowStatus, TelehealthFlow

logger = structlog.get_logger(__name__)

_REVIEWABLE_STATES = {FlowStatus.INTAKE_SUBMITTED, FlowStatus.CONSULTATION_PENDING}


class TelehealthFlowOrchestrator:
    """Owns every status change of a telehealth flow.

    Each public operation loads the flow, checks that its current status may
    move to the requested one, applies side effects and writes the new status
    with a compare-and-set on the flow's version. Operations return a
    ``FlowResult`` and never raise.
    """

    def __init__(
        self,
        *,
        store: FlowStore,
        catalog: CategoryProductCatalog,
        intake: IntakeStore,
        orders: OrderService,
        invoices: InvoiceService,
        lifecycle: FlowLifecycle | None = None,
        auto_assign_provider_id: str | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.intake = intake
        self.orders = orders
        self.invoices = invoices
        self.lifecycle = lifecycle or FlowLifecycle()
        self.auto_assign_provider_id = auto_assign_provider_id

    def initialize_flow(
        self,
        *,
        patient_id: str,
        category_id: str,
        product_id: str | None = None,
    ) -> FlowResult:
        return self._run("initialize_flow", None, lambda: self._initialize(patient_id, category_id, product_id))

    def process_product_selection(
        self,
        flow_id: str,
        product_id: str,
        subscription_duration_id: str | None = None,
    ) -> FlowResult:
        return self._run(
            "process_product_selection",
            flow_id,
            lambda: self._select_product(flow_id, product_id, subscription_duration_id),
        )

    def process_intake_form(self, flow_id: str, form_data: dict[str, Any]) -> FlowResult:
        return self._run("process_intake_form", flow_id, lambda: self._submit_intake(flow_id, form_data))

    def assign_provider(self, flow_id: str, provider_id: str) -> FlowResult:
        return self._run("assign_provider", flow_id, lambda: self._assign_provider(flow_id, provider_id))

    def process_consultation_approval(self, flow_id: str, approval_data: dict[str, Any]) -> FlowResult:
        return self._run(
            "process_consultation_approval",
            flow_id,
            lambda: self._decide_consultation(flow_id, approval_data),
        )

    def complete_flow(self, flow_id: str, data: dict[str, Any] | None = None) -> FlowResult:
        return self._run("complete_flow", flow_id, lambda: self._complete(flow_id, data))

    def cancel_flow(self, flow_id: str, reason: str | None = None) -> FlowResult:
        return self._run("cancel_flow", flow_id, lambda: self._cancel(flow_id, reason))

    def get_flow(self, flow_id: str) -> FlowResult:
        return self._run("get_flow", flow_id, lambda: self._load(flow_id))

    def _run(self, operation: str, flow_id: str | None, func: Callable[[], TelehealthFlow]) -> FlowResult:
        try:
            return FlowResult.ok(func())
        except FlowError as exc:
            logger.warning(
                "flow_operation_failed",
                operation=operation,
                flow_id=flow_id,
                code=exc.code,
                error=exc.message,
            )
            return FlowResult.failure(exc)
        except Exception as exc:
            logger.exception("flow_operation_crashed", operation=operation, flow_id=flow_id)
            return FlowResult.failure(UnexpectedFailure(f"{operation} failed unexpectedly: {exc}"))

    def _load(self, flow_id: str) -> TelehealthFlow:
        record = self.store.get_flow(flow_id)
        if record is None:
            raise NotFound(f"Flow not found: {flow_id}", flow_id=flow_id)
        return TelehealthFlow.from_record(record)

    def _write(
        self,
        flow: TelehealthFlow,
        entries: list[dict[str, Any]],
        changes: dict[str, Any] | None = None,
    ) -> TelehealthFlow:
        now = to_iso(utc_now())
        payload = dict(changes or {})
        payload.update(
            {
                "current_status": entries[-1]["to_status"],
                "status_history": [*flow.status_history, *entries],
                "updated_at": now,
                "last_activity_at": now,
            }
        )
        record = self.store.update_flow(
            flow.id,
            payload,
            expected_version=flow.version,
            transitions=entries,
        )
        for entry in entries:
            logger.info(
                "flow_transition",
                flow_id=flow.id,
                from_status=entry["from_status"],
                to_status=entry["to_status"],
            )
        return TelehealthFlow.from_record(record)

    def _initialize(self, patient_id: str, category_id: str, product_id: str | None) -> TelehealthFlow:
        if not patient_id or not str(patient_id).strip():
            raise ValidationFailure("patient_id is required.")
        category = self.catalog.get_category(category_id)
        if product_id:
            product = self.catalog.get_product(product_id)
            if product["category_id"] != category_id:
                raise ValidationFailure(
                    f"Product {product_id} does not belong to category {category_id}.",
                    product_id=product_id,
                    category_id=category_id,
                )

        now = to_iso(utc_now())
        entry = history_entry(None, FlowStatus.INITIALIZED, {"product_id": product_id} if product_id else None, at=now)
        flow = TelehealthFlow(
            id=uuid.uuid4().hex,
            patient_id=patient_id,
            category_id=category_id,
            current_status=FlowStatus.INITIALIZED,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            product_id=product_id,
            status_history=[entry],
            flow_metadata={"category_name": category["name"]},
        )
        record = self.store.create_flow(flow.to_record(), entry)
        logger.info("flow_initialized", flow_id=flow.id, patient_id=patient_id, category_id=category_id)
        return TelehealthFlow.from_record(record)

    def _select_product(
        self,
        flow_id: str,
        product_id: str,
        subscription_duration_id: str | None,
    ) -> TelehealthFlow:
        flow = self._load(flow_id)
        if (
            flow.current_status == FlowStatus.PRODUCT_SELECTED
            and flow.product_id == product_id
            and flow.subscription_duration_id == subscription_duration_id
        ):
            return flow

        entries = self.lifecycle.path(
            flow,
            [FlowStatus.PRODUCT_SELECTED],
            {"product_id": product_id, "subscription_duration_id": subscription_duration_id},
        )
        product = self.catalog.get_product(product_id)
        if product["category_id"] != flow.category_id:
            raise ValidationFailure(
                f"Product {product_id} does not belong to category {flow.category_id}.",
                product_id=product_id,
                category_id=flow.category_id,
            )
        if not product["active"]:
            raise ValidationFailure(f"Product {product_id} is not available.", product_id=product_id)
        pricing = self.catalog.calculate_pricing(product_id, subscription_duration_id)

        return self._write(
            flow,
            entries,
            {
                "product_id": product_id,
                "subscription_duration_id": subscription_duration_id,
                "pricing_snapshot": pricing,
            },
        )

    def _submit_intake(self, flow_id: str, form_data: dict[str, Any]) -> TelehealthFlow:
        if not isinstance(form_data, dict):
            raise ValidationFailure("Intake form data must be an object.")
        flow = self._load(flow_id)
        provider_id = self.auto_assign_provider_id
        steps = [FlowStatus.INTAKE_SUBMITTED]
        if provider_id:
            steps.append(FlowStatus.CONSULTATION_PENDING)
        if flow.current_status == steps[-1] and flow.intake_form_data == form_data:
            return flow

        entries = self.lifecycle.path(flow, steps)
        if not flow.product_id:
            raise ValidationFailure("A product must be selected before intake.", flow_id=flow_id)

        opened = self.intake.open_consultation(
            flow_id=flow.id,
            patient_id=flow.patient_id,
            form_data=form_data,
            provider_id=provider_id,
        )
        entries[0]["data"] = {"form_submission_id": opened["form_submission_id"]}
        if provider_id:
            entries[1]["data"] = {"consultation_id": opened["consultation_id"], "provider_id": provider_id}

        try:
            return self._write(
                flow,
                entries,
                {
                    "intake_form_data": form_data,
                    "form_submission_id": opened["form_submission_id"],
                    "consultation_id": opened["consultation_id"],
                    "provider_id": provider_id,
                },
            )
        except FlowError:
            self.intake.discard(
                form_submission_id=opened["form_submission_id"],
                consultation_id=opened["consultation_id"],
            )
            raise

    def _assign_provider(self, flow_id: str, provider_id: str) -> TelehealthFlow:
        if not provider_id:
            raise ValidationFailure("provider_id is required.")
        flow = self._load(flow_id)
        if flow.current_status == FlowStatus.CONSULTATION_PENDING and flow.provider_id == provider_id:
            return flow

        entries = self.lifecycle.path(flow, [FlowStatus.CONSULTATION_PENDING], {"provider_id": provider_id})
        if flow.consultation_id:
            self.intake.assign_provider(flow.consultation_id, provider_id)
        try:
            return self._write(flow, entries, {"provider_id": provider_id})
        except FlowError:
            if flow.consultation_id:
                self._restore_consultation(flow, provider_only=True)
            raise

    def _decide_consultation(self, flow_id: str, approval_data: dict[str, Any]) -> TelehealthFlow:
        approved = approval_data.get("approved") if isinstance(approval_data, dict) else None
        if not isinstance(approved, bool):
            raise ValidationFailure("approval_data.approved must be true or false.")
        flow = self._load(flow_id)
        previous = flow.consultation_data or {}

        if approved and flow.current_status == FlowStatus.ORDER_CREATED and previous.get("approved") is True:
            return flow
        if not approved and flow.current_status == FlowStatus.CANCELLED and previous.get("approved") is False:
            return flow

        target = FlowStatus.CONSULTATION_APPROVED if approved else FlowStatus.CANCELLED
        if flow.current_status not in _REVIEWABLE_STATES:
            raise InvalidStateTransition(
                flow_id=flow.id,
                current_status=flow.current_status,
                attempted_status=target,
            )

        provider_id = approval_data.get("provider_id") or flow.provider_id
        consultation_data = {
            "approved": approved,
            "provider_id": provider_id,
            "notes": approval_data.get("notes"),
            "prescription_data": approval_data.get("prescription_data") or {},
            "decided_at": to_iso(utc_now()),
        }

        if not approved:
            entries = self.lifecycle.path(flow, [FlowStatus.CANCELLED], {"reason": "consultation_rejected"})
            if flow.consultation_id:
                self.intake.record_decision(
                    flow.consultation_id,
                    approved=False,
                    provider_id=provider_id,
                    notes=consultation_data["notes"],
                )
            try:
                return self._write(flow, entries, {"consultation_data": consultation_data, "provider_id": provider_id})
            except FlowError:
                if flow.consultation_id:
                    self._restore_consultation(flow)
                raise

        entries = self.lifecycle.path(flow, [FlowStatus.CONSULTATION_APPROVED, FlowStatus.ORDER_CREATED])
        entries[0]["data"] = {"provider_id": provider_id}
        order, invoice = self._create_order_and_invoice(flow, {**approval_data, "provider_id": provider_id})
        entries[1]["data"] = {"order_id": order["id"], "invoice_id": invoice["id"]}

        try:
            if flow.consultation_id:
                self.intake.record_decision(
                    flow.consultation_id,
                    approved=True,
                    provider_id=provider_id,
                    notes=consultation_data["notes"],
                )
            return self._write(
                flow,
                entries,
                {
                    "provider_id": provider_id,
                    "consultation_data": consultation_data,
                    "order_data": {
                        "id": order["id"],
                        "status": order["status"],
                        "items": order["items"],
                        "total_amount": order["total_amount"],
                        "currency": order["currency"],
                    },
                    "invoice_data": {
                        "id": invoice["id"],
                        "amount": invoice["amount"],
                        "currency": invoice["currency"],
                        "status": invoice["status"],
                        "due_date": invoice["due_date"],
                    },
                },
            )
        except FlowError:
            self._compensate(flow, order_id=order["id"], invoice_id=invoice["id"])
            raise

    def _create_order_and_invoice(
        self,
        flow: TelehealthFlow,
        approval_data: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        record = flow.to_record()
        try:
            order = self.orders.create_order_from_flow(record, approval_data)
        except Exception as exc:
            raise SideEffectFailure(f"Order creation failed: {exc}", flow_id=flow.id, side_effect="order") from exc
        try:
            invoice = self.invoices.create_invoice(record, order)
        except Exception as exc:
            self._compensate(flow, order_id=order["id"])
            raise SideEffectFailure(
                f"Invoice creation failed: {exc}",
                flow_id=flow.id,
                side_effect="invoice",
            ) from exc
        return order, invoice

    def _compensate(self, flow: TelehealthFlow, *, order_id: str, invoice_id: str | None = None) -> None:
        if invoice_id:
            try:
                self.invoices.void_invoice(invoice_id)
            except Exception:
                logger.exception("invoice_compensation_failed", flow_id=flow.id, invoice_id=invoice_id)
        try:
            self.orders.void_order(order_id)
        except Exception:
            logger.exception("order_compensation_failed", flow_id=flow.id, order_id=order_id)
        if flow.consultation_id and invoice_id:
            self._restore_consultation(flow)

    def _restore_consultation(self, flow: TelehealthFlow, *, provider_only: bool = False) -> None:
        try:
            if provider_only:
                self.intake.assign_provider(flow.consultation_id, flow.provider_id)
            else:
                self.intake.reopen(flow.consultation_id)
        except Exception:
            logger.exception("consultation_compensation_failed", flow_id=flow.id)

    def _complete(self, flow_id: str, data: dict[str, Any] | None) -> TelehealthFlow:
        flow = self._load(flow_id)
        if flow.current_status == FlowStatus.COMPLETED:
            return flow
        entries = self.lifecycle.path(flow, [FlowStatus.COMPLETED], data)
        return self._write(flow, entries)

    def _cancel(self, flow_id: str, reason: str | None) -> TelehealthFlow:
        flow = self._load(flow_id)
        if flow.current_status == FlowStatus.CANCELLED:
            return flow
        entries = self.lifecycle.path(flow, [FlowStatus.CANCELLED], {"reason": reason or "cancelled"})
        return self._write(flow, entries)
