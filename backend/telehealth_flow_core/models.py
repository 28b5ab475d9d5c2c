from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any

from flow_store.errors import FlowError


class FlowStatus:
    INITIALIZED = "initialized"
    PRODUCT_SELECTED = "product_selected"
    INTAKE_SUBMITTED = "intake_submitted"
    CONSULTATION_PENDING = "consultation_pending"
    CONSULTATION_APPROVED = "consultation_approved"
    ORDER_CREATED = "order_created"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


FLOW_STATES = {
    FlowStatus.INITIALIZED,
    FlowStatus.PRODUCT_SELECTED,
    FlowStatus.INTAKE_SUBMITTED,
    FlowStatus.CONSULTATION_PENDING,
    FlowStatus.CONSULTATION_APPROVED,
    FlowStatus.ORDER_CREATED,
    FlowStatus.COMPLETED,
    FlowStatus.CANCELLED,
}
TERMINAL_STATES = {FlowStatus.COMPLETED, FlowStatus.CANCELLED}


@dataclass
class TelehealthFlow:
    id: str
    patient_id: str
    category_id: str
    current_status: str
    created_at: str
    updated_at: str
    last_activity_at: str
    version: int = 1
    product_id: str | None = None
    subscription_duration_id: str | None = None
    pricing_snapshot: dict[str, Any] | None = None
    status_history: list[dict[str, Any]] = field(default_factory=list)
    intake_form_data: dict[str, Any] | None = None
    form_submission_id: str | None = None
    consultation_id: str | None = None
    provider_id: str | None = None
    consultation_data: dict[str, Any] | None = None
    order_data: dict[str, Any] | None = None
    invoice_data: dict[str, Any] | None = None
    flow_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TelehealthFlow":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in record.items() if key in known})

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_terminal(self) -> bool:
        return self.current_status in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


@dataclass
class FlowResult:
    success: bool
    flow: TelehealthFlow | None = None
    error: FlowError | None = None

    @classmethod
    def ok(cls, flow: TelehealthFlow) -> "FlowResult":
        return cls(success=True, flow=flow)

    @classmethod
    def failure(cls, error: FlowError, flow: TelehealthFlow | None = None) -> "FlowResult":
        return cls(success=False, flow=flow, error=error)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "flow": self.flow.to_record() if self.flow else None,
            "error": self.error.as_dict() if self.error else None,
        }
