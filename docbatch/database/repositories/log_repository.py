from typing import Any

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from docbatch.database.connection import get_connection
from docbatch.database.models import ProcessingLogEntry, is_uuid
from docbatch.domain.exceptions import StorageError


def _row_to_entry(row: dict[str, Any]) -> ProcessingLogEntry:
    return ProcessingLogEntry(
        id=row["id"],
        processing_id=row["processing_id"],
        level=row["level"],
        message=row["message"],
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
    )


class LogRepository:
    """Append-only access to the processing_logs table."""

    def append(
        self,
        processing_id: str,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessingLogEntry:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    INSERT INTO processing_logs (processing_id, level, message, metadata)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id::text AS id, processing_id::text AS processing_id,
                              level, message, metadata, created_at
                    """,
                    (processing_id, level, message, Jsonb(metadata or {})),
                )
                row = cur.fetchone()
            conn.commit()

        if row is None:
            raise StorageError(f"Log entry for processing {processing_id} was not stored")
        return _row_to_entry(row)

    def list_for(self, processing_id: str) -> list[ProcessingLogEntry]:
        """All entries for a processing record, oldest first."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id::text AS id, processing_id::text AS processing_id,
                           level, message, metadata, created_at
                    FROM processing_logs
                    WHERE processing_id = %s
                    ORDER BY created_at, id
                    """,
                    (processing_id,),
                )
                rows = cur.fetchall()
        return [_row_to_entry(row) for row in rows]

    def find_by_id(self, entry_id: str) -> ProcessingLogEntry | None:
        if not is_uuid(entry_id):
            return None
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id::text AS id, processing_id::text AS processing_id,
                           level, message, metadata, created_at
                    FROM processing_logs
                    WHERE id = %s
                    """,
                    (entry_id,),
                )
                row = cur.fetchone()
        if row is None:
            return None
        return _row_to_entry(row)
