from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .base import FlowRecord, FlowStore
from .database import SQLiteFlowDB
from .errors import ConcurrentModification, NotFound, TransportFailure


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class SQLiteFlowStore(FlowStore):
    def __init__(self, db: SQLiteFlowDB) -> None:
        super().__init__()
        self._db = db

    def get_flow(self, flow_id: str) -> FlowRecord | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    "SELECT document_json FROM telehealth_flows WHERE id = ?",
                    (flow_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to read flow {flow_id}: {exc}", flow_id=flow_id) from exc
        return json.loads(row["document_json"]) if row else None

    def create_flow(self, record: FlowRecord, transition: dict[str, Any]) -> FlowRecord:
        document = dict(record)
        document.setdefault("version", 1)
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO telehealth_flows (
                      id, patient_id, category_id, current_status, version, document_json,
                      created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document["id"],
                        document["patient_id"],
                        document["category_id"],
                        document["current_status"],
                        document["version"],
                        _json_dumps(document),
                        document["created_at"],
                        document["updated_at"],
                    ),
                )
                self._insert_transitions(conn, document["id"], [transition])
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to create flow: {exc}") from exc
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
        try:
            with self._db.connection(immediate=True) as conn:
                row = conn.execute(
                    "SELECT version, document_json FROM telehealth_flows WHERE id = ?",
                    (flow_id,),
                ).fetchone()
                if not row:
                    raise NotFound(f"Flow not found: {flow_id}", flow_id=flow_id)
                if row["version"] != expected_version:
                    raise ConcurrentModification(flow_id, expected_version)

                document = json.loads(row["document_json"])
                document.update(changes)
                document["version"] = expected_version + 1
                updated = conn.execute(
                    """
                    UPDATE telehealth_flows
                    SET current_status = ?,
                        version = ?,
                        document_json = ?,
                        updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        document["current_status"],
                        document["version"],
                        _json_dumps(document),
                        document["updated_at"],
                        flow_id,
                        expected_version,
                    ),
                ).rowcount
                if updated != 1:
                    raise ConcurrentModification(flow_id, expected_version)
                self._insert_transitions(conn, flow_id, transitions)
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to update flow {flow_id}: {exc}", flow_id=flow_id) from exc
        self.feed.publish(flow_id, document)
        return document

    def list_flows(self, *, patient_id: str | None = None, limit: int = 50) -> list[FlowRecord]:
        query = "SELECT document_json FROM telehealth_flows"
        params: tuple[Any, ...] = ()
        if patient_id:
            query += " WHERE patient_id = ?"
            params = (patient_id,)
        query += " ORDER BY created_at DESC LIMIT ?"
        try:
            with self._db.connection() as conn:
                rows = conn.execute(query, (*params, max(1, min(limit, 200)))).fetchall()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to list flows: {exc}") from exc
        return [json.loads(row["document_json"]) for row in rows]

    def list_transitions(self, flow_id: str) -> list[dict[str, Any]]:
        try:
            with self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT id, flow_id, from_status, to_status, transition_data_json, created_at
                    FROM flow_state_transitions
                    WHERE flow_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    """,
                    (flow_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to list transitions for {flow_id}: {exc}", flow_id=flow_id) from exc
        return [
            {
                "id": row["id"],
                "flow_id": row["flow_id"],
                "from_status": row["from_status"],
                "to_status": row["to_status"],
                "transition_data": json.loads(row["transition_data_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    @staticmethod
    def _insert_transitions(conn: sqlite3.Connection, flow_id: str, transitions: list[dict[str, Any]]) -> None:
        for entry in transitions:
            conn.execute(
                """
                INSERT INTO flow_state_transitions (
                  id, flow_id, from_status, to_status, transition_data_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    flow_id,
                    entry.get("from_status"),
                    entry["to_status"],
                    _json_dumps(entry.get("data") or {}),
                    entry["at"],
                ),
            )
