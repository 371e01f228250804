from dataclasses import replace
from typing import Any

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from docbatch.database.connection import get_connection
from docbatch.database.models import is_uuid
from docbatch.domain.exceptions import (
    DuplicateDispatchError,
    StorageError,
    ValidationError,
)
from docbatch.domain.models import ProcessingRecord
from docbatch.domain.state import (
    COMPLETED,
    ERROR,
    PENDING,
    PROCESSING,
    Completed,
    Failed,
    Partial,
    Pending,
    Processing,
    ProcessingState,
)

_RECORD_SELECT = """
    SELECT p.id::text AS id, p.batch_context, p.kind, p.period, p.status,
           p.progress, p.result_ref, p.result_url, p.error_message,
           p.estimated_time_minutes, p.worker_response, p.initiated_by,
           p.cancel_requested, p.version, p.started_at, p.completed_at,
           p.updated_at,
           ARRAY(
               SELECT pf.file_id::text FROM processing_files pf
               WHERE pf.processing_id = p.id ORDER BY pf.position
           ) AS file_ids
    FROM processing_records p
"""


def _state_from_row(row: dict[str, Any]) -> ProcessingState:
    status = row["status"]
    progress = row["progress"]
    if status == PENDING:
        return Pending(progress=progress)
    if status == PROCESSING:
        return Processing(
            progress=progress,
            note=row["error_message"],
            result_ref=row["result_ref"],
        )
    if status == COMPLETED:
        return Completed(
            completed_at=row["completed_at"],
            result_url=row["result_url"],
            progress=progress,
        )
    if status == ERROR:
        return Failed(
            message=row["error_message"] or "",
            completed_at=row["completed_at"],
            progress=progress,
        )
    return Partial(
        completed_at=row["completed_at"],
        progress=progress,
        message=row["error_message"],
    )


def _state_columns(state: ProcessingState) -> dict[str, Any]:
    columns: dict[str, Any] = {
        "status": state.status,
        "progress": state.progress,
        "result_ref": None,
        "result_url": None,
        "error_message": None,
        "completed_at": None,
    }
    if isinstance(state, Processing):
        columns["error_message"] = state.note
        columns["result_ref"] = state.result_ref
    elif isinstance(state, Completed):
        columns["result_url"] = state.result_url
        columns["completed_at"] = state.completed_at
    elif isinstance(state, (Failed, Partial)):
        columns["error_message"] = state.message
        columns["completed_at"] = state.completed_at
    return columns


def _row_to_record(row: dict[str, Any]) -> ProcessingRecord:
    return ProcessingRecord(
        id=row["id"],
        batch_context=row["batch_context"],
        kind=row["kind"],
        period=row["period"],
        file_ids=tuple(row["file_ids"] or ()),
        state=_state_from_row(row),
        started_at=row["started_at"],
        initiated_by=row["initiated_by"],
        updated_at=row["updated_at"],
        estimated_time_minutes=row["estimated_time_minutes"],
        worker_response=row["worker_response"],
        cancel_requested=row["cancel_requested"],
        version=row["version"],
    )


class ProcessingRepository:
    """Database operations for processing_records and its file association."""

    def create(
        self,
        *,
        batch_context: str,
        kind: str,
        period: str,
        file_ids: list[str],
        initiated_by: str | None,
    ) -> ProcessingRecord:
        """Insert a pending record for the files in a single transaction.

        Creations for one batch context are serialized with a transaction-level
        advisory lock, so two concurrent submissions of the same content cannot
        both pass the active-record check. Files are matched by id and by
        SHA-256 digest, since every submission stores fresh file rows.

        Raises:
            ValidationError: if a file id is unknown for this batch context.
            DuplicateDispatchError: if a file, or a file with the same content,
                already belongs to an active record.
        """
        with get_connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"processing_records:{batch_context}",),
                    )
                    cur.execute(
                        """
                        SELECT id::text AS id FROM batch_files
                        WHERE id = ANY(%s::uuid[]) AND batch_context = %s
                        ORDER BY id
                        FOR UPDATE
                        """,
                        (file_ids, batch_context),
                    )
                    found = {row["id"] for row in cur.fetchall()}
                    missing = [file_id for file_id in file_ids if file_id not in found]
                    if missing:
                        raise ValidationError(f"Unknown files for this batch: {missing}")

                    cur.execute(
                        """
                        SELECT pf.processing_id::text AS processing_id
                        FROM processing_files pf
                        JOIN processing_records p ON p.id = pf.processing_id
                        JOIN batch_files f ON f.id = pf.file_id
                        WHERE p.batch_context = %(batch_context)s
                          AND p.status IN ('pending', 'processing')
                          AND (
                              pf.file_id = ANY(%(file_ids)s::uuid[])
                              OR f.sha256 IN (
                                  SELECT sha256 FROM batch_files
                                  WHERE id = ANY(%(file_ids)s::uuid[])
                              )
                          )
                        LIMIT 1
                        """,
                        {"batch_context": batch_context, "file_ids": file_ids},
                    )
                    active = cur.fetchone()
                    if active is not None:
                        raise DuplicateDispatchError(
                            f"Files are already being processed by {active['processing_id']}"
                        )

                    cur.execute(
                        """
                        INSERT INTO processing_records
                        (batch_context, kind, period, initiated_by)
                        VALUES (%s, %s, %s, %s)
                        RETURNING id::text AS id
                        """,
                        (batch_context, kind, period, initiated_by),
                    )
                    created = cur.fetchone()
                    if created is None:
                        raise StorageError("Insert of processing record returned no row")
                    processing_id = created["id"]
                    cur.executemany(
                        """
                        INSERT INTO processing_files (processing_id, file_id, position)
                        VALUES (%s, %s, %s)
                        """,
                        [
                            (processing_id, file_id, position)
                            for position, file_id in enumerate(file_ids)
                        ],
                    )

        record = self.find_by_id(processing_id)
        if record is None:
            raise StorageError(f"Processing {processing_id} vanished right after creation")
        return record

    def find_by_id(self, processing_id: str) -> ProcessingRecord | None:
        if not is_uuid(processing_id):
            return None
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"{_RECORD_SELECT} WHERE p.id = %s", (processing_id,))
                row = cur.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def list_active(self, batch_context: str) -> list[ProcessingRecord]:
        """Pending and processing records of one context, newest first."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    {_RECORD_SELECT}
                    WHERE p.batch_context = %s AND p.status IN ('pending', 'processing')
                    ORDER BY p.started_at DESC
                    """,
                    (batch_context,),
                )
                rows = cur.fetchall()
        return [_row_to_record(row) for row in rows]

    def compare_and_swap(
        self,
        record: ProcessingRecord,
        expected_version: int,
    ) -> ProcessingRecord | None:
        """Write the record if the stored version still matches.

        Returns the stored record with its new version, or None when another
        writer got there first.
        """
        params = _state_columns(record.state)
        params.update(
            {
                "estimated_time_minutes": record.estimated_time_minutes,
                "worker_response": (
                    Jsonb(record.worker_response)
                    if record.worker_response is not None
                    else None
                ),
                "id": record.id,
                "expected_version": expected_version,
            }
        )
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    UPDATE processing_records
                    SET status = %(status)s,
                        progress = %(progress)s,
                        result_ref = %(result_ref)s,
                        result_url = %(result_url)s,
                        error_message = %(error_message)s,
                        completed_at = %(completed_at)s,
                        estimated_time_minutes = %(estimated_time_minutes)s,
                        worker_response = %(worker_response)s,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE id = %(id)s AND version = %(expected_version)s
                    RETURNING version, updated_at
                    """,
                    params,
                )
                row = cur.fetchone()
            conn.commit()

        if row is None:
            return None
        return replace(record, version=row["version"], updated_at=row["updated_at"])

    def request_cancel(self, processing_id: str) -> bool:
        """Flag an active record for cancellation. Returns False if nothing was flagged."""
        if not is_uuid(processing_id):
            return False
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE processing_records
                    SET cancel_requested = TRUE, version = version + 1, updated_at = NOW()
                    WHERE id = %s AND status IN ('pending', 'processing')
                    """,
                    (processing_id,),
                )
                flagged = cur.rowcount > 0
            conn.commit()
        return flagged
