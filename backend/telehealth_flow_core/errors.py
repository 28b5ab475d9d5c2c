from __future__ import annotations

from flow_store.errors import ConcurrentModification, FlowError, NotFound, TransportFailure


class CategoryNotFound(NotFound):
    code = "category_not_found"

    def __init__(self, category_id: str) -> None:
        super().__init__(f"Category not found: {category_id}", category_id=category_id)


class InvalidStateTransition(FlowError):
    code = "invalid_state_transition"

    def __init__(self, *, flow_id: str, current_status: str, attempted_status: str) -> None:
        super().__init__(
            f"Invalid transition: {current_status} -> {attempted_status}",
            flow_id=flow_id,
            current_status=current_status,
            attempted_status=attempted_status,
        )
        self.current_status = current_status
        self.attempted_status = attempted_status


class SideEffectFailure(FlowError):
    code = "side_effect_failure"


class ValidationFailure(FlowError):
    code = "validation_failed"


class UnexpectedFailure(FlowError):
    code = "unexpected_error"


__all__ = [
    "CategoryNotFound",
    "ConcurrentModification",
    "FlowError",
    "InvalidStateTransition",
    "NotFound",
    "SideEffectFailure",
    "TransportFailure",
    "UnexpectedFailure",
    "ValidationFailure",
]
