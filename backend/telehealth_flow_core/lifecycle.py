from __future__ import annotations

from typing import Any

from flow_store.time_utils import to_iso, utc_now

from .errors import InvalidStateTransition
from .models import FlowStatus, TelehealthFlow


class FlowLifecycle:
    _TRANSITIONS = {
        FlowStatus.INITIALIZED: {FlowStatus.PRODUCT_SELECTED, FlowStatus.CANCELLED},
        FlowStatus.PRODUCT_SELECTED: {FlowStatus.INTAKE_SUBMITTED, FlowStatus.CANCELLED},
        FlowStatus.INTAKE_SUBMITTED: {
            FlowStatus.CONSULTATION_PENDING,
            FlowStatus.CONSULTATION_APPROVED,
            FlowStatus.CANCELLED,
        },
        FlowStatus.CONSULTATION_PENDING: {FlowStatus.CONSULTATION_APPROVED, FlowStatus.CANCELLED},
        FlowStatus.CONSULTATION_APPROVED: {FlowStatus.ORDER_CREATED, FlowStatus.CANCELLED},
        FlowStatus.ORDER_CREATED: {FlowStatus.COMPLETED, FlowStatus.CANCELLED},
        FlowStatus.COMPLETED: set(),
        FlowStatus.CANCELLED: set(),
    }

    def can_transition(self, status: str, next_state: str) -> bool:
        return next_state in self._TRANSITIONS.get(status, set())

    def path(self, flow: TelehealthFlow, steps: list[str], data: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Validate a chain of transitions from the flow's status and build its history entries."""
        entries: list[dict[str, Any]] = []
        current = flow.current_status
        at = to_iso(utc_now())
        for next_state in steps:
            if not self.can_transition(current, next_state):
                raise InvalidStateTransition(
                    flow_id=flow.id,
                    current_status=flow.current_status,
                    attempted_status=next_state,
                )
            entries.append(history_entry(current, next_state, data, at=at))
            current = next_state
        return entries


def history_entry(
    from_status: str | None,
    to_status: str,
    data: dict[str, Any] | None = None,
    *,
    at: str | None = None,
) -> dict[str, Any]:
    return {
        "from_status": from_status,
        "to_status": to_status,
        "at": at or to_iso(utc_now()),
        "data": dict(data or {}),
    }
