from __future__ import annotations

import threading
from typing import Any, Callable

import structlog

from flow_store.base import FlowRecord, FlowStore, Unsubscribe
from telehealth_flow_core import (
    FlowError,
    FlowResult,
    TelehealthFlow,
    TelehealthFlowOrchestrator,
    ValidationFailure,
)

logger = structlog.get_logger(__name__)

Notifier = Callable[[str, str, str], None]


def _log_notification(kind: str, title: str, description: str) -> None:
    if kind == "destructive":
        logger.warning("flow_notification", title=title, description=description)
    else:
        logger.info("flow_notification", title=title, description=description)


class TelehealthFlowSession:
    """Client-side view of a single flow.

    Mirrors the flow record through a store subscription and exposes the
    orchestrator transitions as actions. ``loading`` is true while an action
    runs; a failed action sets ``error`` and keeps the last good ``flow``.
    ``notifier(kind, title, description)`` receives user-facing messages;
    ``kind`` is ``"default"`` or ``"destructive"``.
    """

    def __init__(
        self,
        orchestrator: TelehealthFlowOrchestrator,
        *,
        store: FlowStore | None = None,
        notifier: Notifier | None = None,
        flow_id: str | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store or orchestrator.store
        self._notify = notifier or _log_notification
        self._lock = threading.RLock()
        self._flow: TelehealthFlow | None = None
        self._flow_id: str | None = None
        self._error: str | None = None
        self._loading = False
        self._unsubscribe: Unsubscribe | None = None
        if flow_id:
            self.bind(flow_id)

    def __enter__(self) -> "TelehealthFlowSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def flow(self) -> TelehealthFlow | None:
        return self._flow

    @property
    def flow_id(self) -> str | None:
        return self._flow_id

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def is_flow_active(self) -> bool:
        flow = self._flow
        return bool(flow and flow.is_active)

    def bind(self, flow_id: str | None) -> None:
        """Follow ``flow_id``; any previous subscription is torn down first."""
        with self._lock:
            if flow_id == self._flow_id and self._unsubscribe is not None:
                return
            self._teardown()
            if self._flow is not None and self._flow.id != flow_id:
                self._flow = None
            self._flow_id = flow_id
            if not flow_id:
                return
            self._loading = True
        try:
            unsubscribe = self._store.subscribe(flow_id, lambda record: self._on_change(flow_id, record))
        except FlowError as exc:
            logger.warning("flow_subscription_failed", flow_id=flow_id, error=exc.message)
            self._error = exc.message
        else:
            with self._lock:
                if self._flow_id == flow_id:
                    self._unsubscribe = unsubscribe
                else:
                    unsubscribe()
        finally:
            self._loading = False

    def close(self) -> None:
        with self._lock:
            self._teardown()

    def sync(self) -> TelehealthFlow | None:
        """Pull writes made by other processes into the bound flow."""
        flow_id = self._flow_id
        if not flow_id:
            return None
        known = self._flow.version if self._flow else None
        try:
            self._store.refresh(flow_id, known)
        except FlowError as exc:
            self._error = exc.message
        return self._flow

    def initialize_flow(
        self,
        *,
        patient_id: str,
        category_id: str,
        product_id: str | None = None,
    ) -> FlowResult:
        result = self._execute(
            lambda: self._orchestrator.initialize_flow(
                patient_id=patient_id,
                category_id=category_id,
                product_id=product_id,
            ),
            success=("Flow Started", "Your telehealth journey has begun."),
        )
        if result.success and result.flow:
            self.bind(result.flow.id)
        return result

    def select_product(self, product_id: str, subscription_duration_id: str | None = None) -> FlowResult:
        flow = self._require_flow()
        if flow is None:
            return FlowResult.failure(ValidationFailure("Flow not initialized."))
        return self._execute(
            lambda: self._orchestrator.process_product_selection(flow.id, product_id, subscription_duration_id),
            success=("Product Selected", "Ready for the next step."),
        )

    def submit_intake_form(self, form_data: dict[str, Any]) -> FlowResult:
        flow = self._require_flow()
        if flow is None:
            return FlowResult.failure(ValidationFailure("Flow not initialized."))
        return self._execute(
            lambda: self._orchestrator.process_intake_form(flow.id, form_data),
            error_title="Submission Error",
        )

    def approve_consultation(self, approval_data: dict[str, Any]) -> FlowResult:
        flow = self._require_flow()
        if flow is None:
            return FlowResult.failure(ValidationFailure("Flow not initialized."))
        approved = bool(approval_data.get("approved"))
        return self._execute(
            lambda: self._orchestrator.process_consultation_approval(flow.id, approval_data),
            success=(
                ("Consultation Approved", "Order and invoice have been generated.")
                if approved
                else ("Consultation Declined", "The flow has been cancelled.")
            ),
            error_title="Approval Error",
        )

    def cancel_flow(self, reason: str | None = None) -> FlowResult:
        flow = self._require_flow()
        if flow is None:
            return FlowResult.failure(ValidationFailure("Flow not initialized."))
        return self._execute(
            lambda: self._orchestrator.cancel_flow(flow.id, reason),
            success=("Flow Cancelled", "This telehealth flow has been cancelled."),
        )

    def get_product_recommendations(self, category_id: str) -> list[dict[str, Any]]:
        self._loading = True
        self._error = None
        try:
            return self._orchestrator.catalog.get_product_recommendations(category_id)
        except FlowError as exc:
            self._error = exc.message
            self._notify("destructive", "Recommendation Error", exc.message)
            return []
        finally:
            self._loading = False

    def _execute(
        self,
        call: Callable[[], FlowResult],
        *,
        success: tuple[str, str] | None = None,
        error_title: str = "Error",
    ) -> FlowResult:
        self._loading = True
        self._error = None
        try:
            result = call()
            if result.success and result.flow:
                self._apply(result.flow)
                if success:
                    self._notify("default", *success)
            else:
                message = result.error.message if result.error else "Flow operation failed."
                self._error = message
                self._notify("destructive", error_title, message)
            return result
        finally:
            self._loading = False

    def _require_flow(self) -> TelehealthFlow | None:
        flow = self._flow
        if flow is None:
            self._error = "Flow not initialized."
            self._notify("destructive", "Error", self._error)
        return flow

    def _on_change(self, flow_id: str, record: FlowRecord | None) -> None:
        with self._lock:
            if flow_id != self._flow_id:
                return
            if record is None:
                self._flow = None
                self._error = "Flow not found."
                self._notify("destructive", "Error", "Could not find the specified telehealth flow.")
                return
            self._apply(TelehealthFlow.from_record(record))

    def _apply(self, flow: TelehealthFlow) -> None:
        with self._lock:
            current = self._flow
            # Subscription callbacks may land before the action's own result.
            if current and current.id == flow.id and current.version > flow.version:
                return
            self._flow = flow

    def _teardown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
