from __future__ import annotations

from typing import Any


class FlowError(Exception):
    code = "flow_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class NotFound(FlowError):
    code = "not_found"


class TransportFailure(FlowError):
    """Persistence read/write/subscribe failed. Retryable by the caller."""

    code = "transport_failure"


class ConcurrentModification(FlowError):
    code = "concurrent_modification"

    def __init__(self, flow_id: str, expected_version: int) -> None:
        super().__init__(
            f"Flow {flow_id} was modified concurrently (expected version {expected_version}).",
            flow_id=flow_id,
            expected_version=expected_version,
        )
