from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .database import SQLiteFlowDB
from .errors import NotFound, TransportFailure
from .time_utils import to_iso, utc_now


class IntakeStore:
    """Form submissions and the consultation records they open."""

    def __init__(self, db: SQLiteFlowDB) -> None:
        self._db = db

    def open_consultation(
        self,
        *,
        flow_id: str,
        patient_id: str,
        form_data: dict[str, Any],
        provider_id: str | None = None,
    ) -> dict[str, str]:
        now = to_iso(utc_now())
        submission_id = uuid.uuid4().hex
        consultation_id = uuid.uuid4().hex
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO form_submissions (id, flow_id, patient_id, form_data_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (submission_id, flow_id, patient_id, json.dumps(form_data, sort_keys=True), now),
                )
                conn.execute(
                    """
                    INSERT INTO consultations (
                      id, flow_id, patient_id, provider_id, form_submission_id, status,
                      provider_notes, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'pending_review', NULL, ?, ?)
                    """,
                    (consultation_id, flow_id, patient_id, provider_id, submission_id, now, now),
                )
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to store intake for flow {flow_id}: {exc}", flow_id=flow_id) from exc
        return {"form_submission_id": submission_id, "consultation_id": consultation_id}

    def discard(self, *, form_submission_id: str, consultation_id: str) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute("DELETE FROM consultations WHERE id = ?", (consultation_id,))
                conn.execute("DELETE FROM form_submissions WHERE id = ?", (form_submission_id,))
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to discard intake {form_submission_id}: {exc}") from exc

    def assign_provider(self, consultation_id: str, provider_id: str) -> None:
        self._update(
            consultation_id,
            "UPDATE consultations SET provider_id = ?, updated_at = ? WHERE id = ?",
            (provider_id, to_iso(utc_now()), consultation_id),
        )

    def record_decision(
        self,
        consultation_id: str,
        *,
        approved: bool,
        provider_id: str | None,
        notes: str | None,
    ) -> None:
        self._update(
            consultation_id,
            """
            UPDATE consultations
            SET status = ?,
                provider_id = COALESCE(?, provider_id),
                provider_notes = ?,
                updated_at = ?
            WHERE id = ?
            """,
            ("approved" if approved else "rejected", provider_id, notes, to_iso(utc_now()), consultation_id),
        )

    def reopen(self, consultation_id: str) -> None:
        self._update(
            consultation_id,
            "UPDATE consultations SET status = 'pending_review', updated_at = ? WHERE id = ?",
            (to_iso(utc_now()), consultation_id),
        )

    def get_consultation(self, consultation_id: str) -> dict[str, Any] | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT id, flow_id, patient_id, provider_id, form_submission_id, status,
                           provider_notes, created_at, updated_at
                    FROM consultations
                    WHERE id = ?
                    """,
                    (consultation_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to read consultation {consultation_id}: {exc}") from exc
        return dict(row) if row else None

    def _update(self, consultation_id: str, query: str, params: tuple[Any, ...]) -> None:
        try:
            with self._db.connection() as conn:
                updated = conn.execute(query, params).rowcount
        except sqlite3.Error as exc:
            raise TransportFailure(f"Failed to update consultation {consultation_id}: {exc}") from exc
        if not updated:
            raise NotFound(f"Consultation not found: {consultation_id}", consultation_id=consultation_id)
