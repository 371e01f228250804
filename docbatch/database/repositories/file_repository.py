from dataclasses import replace
from typing import Any

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from docbatch.database.connection import get_connection
from docbatch.database.models import (
    FILE_COMPLETED,
    FILE_ERROR,
    FILE_PENDING,
    FILE_PROCESSING,
    FileRecord,
)
from docbatch.domain.exceptions import StorageError

_FILE_COLUMNS = """
    f.id::text AS id, f.batch_context, f.filename, f.original_filename,
    f.size_bytes, f.sha256, f.declared_period, f.kind, f.status, f.result_ref,
    f.extracted_data, f.error_message, f.uploaded_by, f.created_at,
    f.updated_at, f.processed_at
"""


def _row_to_file(row: dict[str, Any]) -> FileRecord:
    return FileRecord(
        id=row["id"],
        batch_context=row["batch_context"],
        filename=row["filename"],
        original_filename=row["original_filename"],
        size_bytes=row["size_bytes"],
        sha256=row["sha256"],
        declared_period=row["declared_period"],
        kind=row["kind"],
        status=row["status"],
        result_ref=row["result_ref"],
        extracted_data=row["extracted_data"],
        error_message=row["error_message"],
        uploaded_by=row["uploaded_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        processed_at=row["processed_at"],
    )


class FileRepository:
    """Database operations for the batch_files table."""

    def insert(self, record: FileRecord) -> FileRecord:
        """Persist a new file row and return it with its generated id and timestamps."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    INSERT INTO batch_files
                    (batch_context, filename, original_filename, size_bytes, sha256,
                     declared_period, kind, status, uploaded_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id::text AS id, created_at, updated_at
                    """,
                    (
                        record.batch_context,
                        record.filename,
                        record.original_filename,
                        record.size_bytes,
                        record.sha256,
                        record.declared_period,
                        record.kind,
                        FILE_PENDING,
                        record.uploaded_by,
                    ),
                )
                row = cur.fetchone()
            conn.commit()

        if row is None:
            raise StorageError(f"Insert of file {record.original_filename} returned no row")
        return replace(
            record,
            id=row["id"],
            status=FILE_PENDING,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def find_by_processing(self, processing_id: str) -> list[FileRecord]:
        """Files attached to a processing record, in submission order."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_FILE_COLUMNS}
                    FROM batch_files f
                    JOIN processing_files pf ON pf.file_id = f.id
                    WHERE pf.processing_id = %s
                    ORDER BY pf.position
                    """,
                    (processing_id,),
                )
                rows = cur.fetchall()
        return [_row_to_file(row) for row in rows]

    def mark_processing(self, file_ids: list[str]) -> None:
        """Move pending files to processing. Files already further along are untouched."""
        with get_connection() as conn:
            conn.execute(
                """
                UPDATE batch_files
                SET status = %s, updated_at = NOW()
                WHERE id = ANY(%s::uuid[]) AND status = %s
                """,
                (FILE_PROCESSING, file_ids, FILE_PENDING),
            )
            conn.commit()

    def mark_completed(
        self,
        file_ids: list[str],
        result_ref: str | None,
        extracted_data: dict[str, Any] | None = None,
    ) -> None:
        """Mark non-terminal files as completed with the batch's result reference."""
        with get_connection() as conn:
            conn.execute(
                """
                UPDATE batch_files
                SET status = %s, result_ref = %s, extracted_data = %s,
                    processed_at = NOW(), updated_at = NOW()
                WHERE id = ANY(%s::uuid[]) AND status IN (%s, %s)
                """,
                (
                    FILE_COMPLETED,
                    result_ref,
                    Jsonb(extracted_data) if extracted_data is not None else None,
                    file_ids,
                    FILE_PENDING,
                    FILE_PROCESSING,
                ),
            )
            conn.commit()

    def mark_failed(self, file_ids: list[str], error: str) -> None:
        """Mark non-terminal files as failed."""
        with get_connection() as conn:
            conn.execute(
                """
                UPDATE batch_files
                SET status = %s, error_message = %s, processed_at = NOW(), updated_at = NOW()
                WHERE id = ANY(%s::uuid[]) AND status IN (%s, %s)
                """,
                (FILE_ERROR, error, file_ids, FILE_PENDING, FILE_PROCESSING),
            )
            conn.commit()
