from __future__ import annotations

import sqlite3
import threading
import time

import pytest

from flow_store import ConcurrentModification, NotFound
from telehealth_flow_core import FlowStatus


def _select_product(flow_store, flow_id: str, version: int) -> dict:
    return flow_store.update_flow(
        flow_id,
        {"current_status": FlowStatus.PRODUCT_SELECTED, "product_id": "prod-42", "updated_at": "2026-01-01T00:00:01Z"},
        expected_version=version,
        transitions=[],
    )


def test_update_missing_flow(flow_store):
    with pytest.raises(NotFound):
        _select_product(flow_store, "missing", 1)


def test_update_waits_for_concurrent_writer_and_reports_conflict(orchestrator, flow_store, db):
    flow_id = orchestrator.initialize_flow(patient_id="patient-1", category_id="weight-mgmt").flow.id

    writer = sqlite3.connect(db.path, isolation_level=None)
    writer.execute("BEGIN IMMEDIATE")
    writer.execute("UPDATE telehealth_flows SET version = version + 1 WHERE id = ?", (flow_id,))

    outcome: dict[str, Exception] = {}

    def _update() -> None:
        try:
            _select_product(flow_store, flow_id, 1)
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_update)
    thread.start()
    time.sleep(0.2)
    writer.execute("COMMIT")
    writer.close()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert isinstance(outcome.get("error"), ConcurrentModification)
    assert flow_store.get_flow(flow_id)["current_status"] == FlowStatus.INITIALIZED
