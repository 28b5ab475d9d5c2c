from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)

FlowRecord = dict[str, Any]
FlowCallback = Callable[[FlowRecord | None], None]
Unsubscribe = Callable[[], None]


class ChangeFeed:
    """Per-flow subscriber registry, notified after every committed write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[FlowCallback]] = {}

    def add(self, flow_id: str, callback: FlowCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.setdefault(flow_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(flow_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(flow_id, None)

        return _unsubscribe

    def subscriber_count(self, flow_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(flow_id, []))

    def publish(self, flow_id: str, record: FlowRecord | None) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(flow_id, []))
        for callback in callbacks:
            try:
                callback(record)
            except Exception:
                logger.exception("flow_subscriber_failed", flow_id=flow_id)


class FlowStore(ABC):
    """Read, write and subscribe to flow records by id.

    Adapters raise ``NotFound`` for a missing record on update,
    ``ConcurrentModification`` when ``expected_version`` is stale and
    ``TransportFailure`` for any backend error. ``get_flow`` returns ``None``
    for a missing record so callers can tell it apart from a transport error.
    """

    def __init__(self) -> None:
        self.feed = ChangeFeed()

    @abstractmethod
    def get_flow(self, flow_id: str) -> FlowRecord | None:
        raise NotImplementedError

    @abstractmethod
    def create_flow(self, record: FlowRecord, transition: dict[str, Any]) -> FlowRecord:
        raise NotImplementedError

    @abstractmethod
    def update_flow(
        self,
        flow_id: str,
        changes: dict[str, Any],
        *,
        expected_version: int,
        transitions: list[dict[str, Any]],
    ) -> FlowRecord:
        raise NotImplementedError

    @abstractmethod
    def list_flows(self, *, patient_id: str | None = None, limit: int = 50) -> list[FlowRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_transitions(self, flow_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def subscribe(self, flow_id: str, callback: FlowCallback) -> Unsubscribe:
        unsubscribe = self.feed.add(flow_id, callback)
        try:
            current = self.get_flow(flow_id)
        except Exception:
            unsubscribe()
            raise
        logger.debug("flow_subscribed", flow_id=flow_id, subscribers=self.feed.subscriber_count(flow_id))
        callback(current)
        return unsubscribe

    def refresh(self, flow_id: str, known_version: int | None) -> FlowRecord | None:
        """Re-read a flow and notify subscribers when another writer changed it.

        Writes made through this store publish on their own; this catches
        writes from other processes sharing the same backend.
        """
        record = self.get_flow(flow_id)
        current_version = record.get("version") if record else None
        if current_version != known_version:
            self.feed.publish(flow_id, record)
        return record
