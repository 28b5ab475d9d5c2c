from __future__ import annotations

import json

import httpx
import pytest

from flow_store import ConcurrentModification, NotFound, PostgRESTFlowStore, TransportFailure
from telehealth_flow_core import FlowStatus, TelehealthFlow
from telehealth_flow_core.lifecycle import history_entry


class FakePostgREST:
    """In-memory stand-in for the two tables the adapter touches."""

    def __init__(self) -> None:
        self.flows: dict[str, dict] = {}
        self.transitions: list[dict] = []
        self.fail_transitions = False
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit("/", 1)[-1]
        params = request.url.params
        if table == "flow_state_transitions":
            if request.method == "POST":
                if self.fail_transitions:
                    return httpx.Response(500, json={"message": "audit down"})
                self.transitions.extend(json.loads(request.content))
                return httpx.Response(201)
            flow_id = params["flow_id"].removeprefix("eq.")
            return httpx.Response(200, json=[row for row in self.transitions if row["flow_id"] == flow_id])

        if request.method == "GET":
            rows = list(self.flows.values())
            if "id" in params:
                rows = [row for row in rows if row["id"] == params["id"].removeprefix("eq.")]
            if "patient_id" in params:
                rows = [row for row in rows if row["patient_id"] == params["patient_id"].removeprefix("eq.")]
            return httpx.Response(200, json=[{"document": row["document"]} for row in rows])
        if request.method == "POST":
            row = json.loads(request.content)
            self.flows[row["id"]] = row
            return httpx.Response(201)
        if request.method == "PATCH":
            flow_id = params["id"].removeprefix("eq.")
            version = int(params["version"].removeprefix("eq."))
            current = self.flows.get(flow_id)
            if not current or current["version"] != version:
                return httpx.Response(200, json=[])
            self.flows[flow_id] = json.loads(request.content)
            return httpx.Response(200, json=[self.flows[flow_id]])
        return httpx.Response(405)


@pytest.fixture
def backend() -> FakePostgREST:
    return FakePostgREST()


@pytest.fixture
def store(backend) -> PostgRESTFlowStore:
    client = httpx.Client(base_url="https://demo.supabase.co/rest/v1", transport=httpx.MockTransport(backend))
    return PostgRESTFlowStore("https://demo.supabase.co", "service-key", client=client)


def _new_flow(flow_id: str = "flow-1") -> tuple[dict, dict]:
    at = "2026-01-01T00:00:00Z"
    entry = history_entry(None, FlowStatus.INITIALIZED, at=at)
    flow = TelehealthFlow(
        id=flow_id,
        patient_id="patient-1",
        category_id="weight-mgmt",
        current_status=FlowStatus.INITIALIZED,
        created_at=at,
        updated_at=at,
        last_activity_at=at,
        status_history=[entry],
    )
    return flow.to_record(), entry


def _advance(store: PostgRESTFlowStore, flow_id: str, version: int) -> dict:
    entry = history_entry(FlowStatus.INITIALIZED, FlowStatus.PRODUCT_SELECTED, {"product_id": "prod-42"})
    return store.update_flow(
        flow_id,
        {"current_status": FlowStatus.PRODUCT_SELECTED, "product_id": "prod-42", "updated_at": entry["at"]},
        expected_version=version,
        transitions=[entry],
    )


def test_create_and_update_flow_through_rest(store, backend):
    record, entry = _new_flow()
    store.create_flow(record, entry)

    updated = _advance(store, "flow-1", 1)

    assert updated["version"] == 2
    assert store.get_flow("flow-1")["current_status"] == FlowStatus.PRODUCT_SELECTED
    assert backend.flows["flow-1"]["current_status"] == FlowStatus.PRODUCT_SELECTED
    assert [row["to_status"] for row in store.list_transitions("flow-1")] == [
        FlowStatus.INITIALIZED,
        FlowStatus.PRODUCT_SELECTED,
    ]
    patch = next(request for request in backend.requests if request.method == "PATCH")
    assert patch.url.params["version"] == "eq.1"


def test_missing_flow(store):
    assert store.get_flow("missing") is None
    with pytest.raises(NotFound):
        _advance(store, "missing", 1)


def test_stale_version_is_rejected_before_patch(store, backend):
    record, entry = _new_flow()
    store.create_flow(record, entry)
    _advance(store, "flow-1", 1)

    with pytest.raises(ConcurrentModification):
        _advance(store, "flow-1", 1)
    assert sum(1 for request in backend.requests if request.method == "PATCH") == 1


def test_lost_race_on_patch_is_concurrent_modification(store, backend):
    record, entry = _new_flow()
    store.create_flow(record, entry)
    original = backend.__call__

    def _racing(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            backend.flows["flow-1"]["version"] = 5
        return original(request)

    store._client = httpx.Client(base_url="https://demo.supabase.co/rest/v1", transport=httpx.MockTransport(_racing))

    with pytest.raises(ConcurrentModification):
        _advance(store, "flow-1", 1)


def test_http_errors_become_transport_failures(store):
    store._client = httpx.Client(
        base_url="https://demo.supabase.co/rest/v1",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, json={"message": "down"})),
    )

    with pytest.raises(TransportFailure) as excinfo:
        store.get_flow("flow-1")
    assert excinfo.value.details == {"status_code": 503}


def test_connection_errors_become_transport_failures(store):
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store._client = httpx.Client(base_url="https://demo.supabase.co/rest/v1", transport=httpx.MockTransport(_refuse))

    with pytest.raises(TransportFailure):
        store.list_flows()


def test_audit_failure_does_not_fail_the_write(store, backend):
    record, entry = _new_flow()
    store.create_flow(record, entry)
    backend.fail_transitions = True

    updated = _advance(store, "flow-1", 1)

    assert updated["version"] == 2
    assert len(backend.transitions) == 1


def test_refresh_publishes_remote_changes(store, backend):
    record, entry = _new_flow()
    store.create_flow(record, entry)
    received: list[dict | None] = []
    unsubscribe = store.subscribe("flow-1", received.append)

    backend.flows["flow-1"]["document"] = {**backend.flows["flow-1"]["document"], "version": 2}
    store.refresh("flow-1", 1)
    store.refresh("flow-1", 2)
    unsubscribe()

    assert [item["version"] for item in received] == [1, 2]


def test_list_flows_filters_by_patient(store):
    record, entry = _new_flow("flow-1")
    store.create_flow(record, entry)
    other, other_entry = _new_flow("flow-2")
    other["patient_id"] = "patient-2"
    store.create_flow(other, other_entry)

    assert [item["id"] for item in store.list_flows(patient_id="patient-2")] == ["flow-2"]
