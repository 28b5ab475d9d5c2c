from .base import ChangeFeed, FlowStore
from .billing_store import InvoiceService, OrderService
from .catalog_store import SQLiteCatalogStore
from .database import SQLiteFlowDB
from .errors import ConcurrentModification, FlowError, NotFound, TransportFailure
from .intake_store import IntakeStore
from .postgrest_store import PostgRESTFlowStore
from .sqlite_store import SQLiteFlowStore

__all__ = [
    "ChangeFeed",
    "ConcurrentModification",
    "FlowError",
    "FlowStore",
    "IntakeStore",
    "InvoiceService",
    "NotFound",
    "OrderService",
    "PostgRESTFlowStore",
    "SQLiteCatalogStore",
    "SQLiteFlowDB",
    "SQLiteFlowStore",
    "TransportFailure",
]
