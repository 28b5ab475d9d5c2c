from __future__ import annotations

import uuid
from typing import Any

import httpx
import structlog

from .base import FlowRecord, FlowStore
from .errors import ConcurrentModification, NotFound, TransportFailure

logger = structlog.get_logger(__name__)


class PostgRESTFlowStore(FlowStore):
    """Flow adapter for a Supabase project, talking to its PostgREST endpoint.

    Rows keep the full flow document in a ``document`` jsonb column next to the
    indexed ``id``, ``patient_id``, ``current_status`` and ``version`` columns.
    Writes go through a ``version=eq.N`` filter so a lost race returns no rows.
    Changes made by other processes reach subscribers through ``refresh``.
    """

    flows_table = "telehealth_flows"
    transitions_table = "flow_state_transitions"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__()
        self._client = client or httpx.Client(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportFailure(
                f"PostgREST {method} {path} failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(f"PostgREST {method} {path} failed: {exc}") from exc
        if not response.content:
            return None
        return response.json()

    def get_flow(self, flow_id: str) -> FlowRecord | None:
        rows = self._request(
            "GET",
            f"/{self.flows_table}",
            params={"id": f"eq.{flow_id}", "select": "document", "limit": "1"},
        )
        if not rows:
            return None
        return rows[0]["document"]

    def create_flow(self, record: FlowRecord, transition: dict[str, Any]) -> FlowRecord:
        document = dict(record)
        document.setdefault("version", 1)
        self._request(
            "POST",
            f"/{self.flows_table}",
            json=self._row(document),
            headers={"Prefer": "return=minimal"},
        )
        self._record_transitions(document["id"], [transition])
        self.feed.publish(document["id"], document)
        return document

    def update_flow(
        self,
        flow_id: str,
        changes: dict[str, Any],
        *,
        expected_version: int,
        transitions: list[dict[str, Any]],
    ) -> FlowRecord:
        current = self.get_flow(flow_id)
        if current is None:
            raise NotFound(f"Flow not found: {flow_id}", flow_id=flow_id)
        if current.get("version") != expected_version:
            raise ConcurrentModification(flow_id, expected_version)

        document = {**current, **changes, "version": expected_version + 1}
        rows = self._request(
            "PATCH",
            f"/{self.flows_table}",
            params={"id": f"eq.{flow_id}", "version": f"eq.{expected_version}"},
            json=self._row(document),
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise ConcurrentModification(flow_id, expected_version)
        self._record_transitions(flow_id, transitions)
        self.feed.publish(flow_id, document)
        return document

    def list_flows(self, *, patient_id: str | None = None, limit: int = 50) -> list[FlowRecord]:
        params = {
            "select": "document",
            "order": "created_at.desc",
            "limit": str(max(1, min(limit, 200))),
        }
        if patient_id:
            params["patient_id"] = f"eq.{patient_id}"
        rows = self._request("GET", f"/{self.flows_table}", params=params) or []
        return [row["document"] for row in rows]

    def list_transitions(self, flow_id: str) -> list[dict[str, Any]]:
        rows = self._request(
            "GET",
            f"/{self.transitions_table}",
            params={"flow_id": f"eq.{flow_id}", "order": "created_at.asc"},
        )
        return list(rows or [])

    def _record_transitions(self, flow_id: str, transitions: list[dict[str, Any]]) -> None:
        # status_history inside the document is authoritative; this table is the audit copy.
        rows = [
            {
                "id": uuid.uuid4().hex,
                "flow_id": flow_id,
                "from_status": entry.get("from_status"),
                "to_status": entry["to_status"],
                "transition_data": entry.get("data") or {},
                "created_at": entry["at"],
            }
            for entry in transitions
        ]
        if not rows:
            return
        try:
            self._request(
                "POST",
                f"/{self.transitions_table}",
                json=rows,
                headers={"Prefer": "return=minimal"},
            )
        except TransportFailure as exc:
            logger.warning("flow_transition_audit_failed", flow_id=flow_id, error=exc.message)

    @staticmethod
    def _row(document: FlowRecord) -> dict[str, Any]:
        return {
            "id": document["id"],
            "patient_id": document["patient_id"],
            "category_id": document["category_id"],
            "current_status": document["current_status"],
            "version": document["version"],
            "document": document,
            "created_at": document["created_at"],
            "updated_at": document["updated_at"],
        }
