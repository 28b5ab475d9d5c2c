from .catalog import CategoryProductCatalog
from .errors import (
    CategoryNotFound,
    ConcurrentModification,
    FlowError,
    InvalidStateTransition,
    NotFound,
    SideEffectFailure,
    TransportFailure,
    UnexpectedFailure,
    ValidationFailure,
)
from .lifecycle import FlowLifecycle
from .models import FLOW_STATES, TERMINAL_STATES, FlowResult, FlowStatus, TelehealthFlow
from .orchestrator import TelehealthFlowOrchestrator

__all__ = [
    "FLOW_STATES",
    "TERMINAL_STATES",
    "CategoryNotFound",
    "CategoryProductCatalog",
    "ConcurrentModification",
    "FlowError",
    "FlowLifecycle",
    "FlowResult",
    "FlowStatus",
    "InvalidStateTransition",
    "NotFound",
    "SideEffectFailure",
    "TelehealthFlow",
    "TelehealthFlowOrchestrator",
    "TransportFailure",
    "UnexpectedFailure",
    "ValidationFailure",
]
