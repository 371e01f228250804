from datetime import datetime
from typing import Any

from psycopg import sql
from psycopg.rows import dict_row

from docbatch.database.connection import get_connection
from docbatch.history.models import HistoryFilters, HistorySort


def _where_clause(
    batch_context: str,
    filters: HistoryFilters,
    statuses: tuple[str, ...],
) -> tuple[sql.Composed, list[Any]]:
    conditions = [sql.SQL("p.batch_context = %s"), sql.SQL("p.status = ANY(%s)")]
    params: list[Any] = [batch_context, list(statuses)]
    if filters.period:
        conditions.append(sql.SQL("p.period = %s"))
        params.append(filters.period)
    if filters.kind:
        conditions.append(sql.SQL("p.kind = %s"))
        params.append(filters.kind)
    if filters.started_from is not None:
        conditions.append(sql.SQL("p.started_at >= %s"))
        params.append(filters.started_from)
    if filters.started_to is not None:
        conditions.append(sql.SQL("p.started_at <= %s"))
        params.append(filters.started_to)
    return sql.SQL(" AND ").join(conditions), params


class HistoryRepository:
    """Read-only reporting queries over processing_records."""

    def search(
        self,
        batch_context: str,
        filters: HistoryFilters,
        statuses: tuple[str, ...],
        sort: HistorySort,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of history rows and the total number of matches.

        ``sort`` must already be validated against the allowed fields.
        """
        where, params = _where_clause(batch_context, filters, statuses)
        direction = sql.SQL("ASC") if sort.direction == "asc" else sql.SQL("DESC")
        count_query = sql.SQL(
            "SELECT COUNT(*) AS total FROM processing_records p WHERE {where}"
        ).format(where=where)
        page_query = sql.SQL(
            """
            SELECT p.id::text AS id, p.kind, p.period, p.status, p.progress,
                   p.started_at, p.completed_at, p.result_url, p.error_message,
                   (SELECT COUNT(*) FROM processing_files pf
                    WHERE pf.processing_id = p.id) AS files_count
            FROM processing_records p
            WHERE {where}
            ORDER BY {field} {direction} NULLS LAST, p.id
            LIMIT %s OFFSET %s
            """
        ).format(
            where=where,
            field=sql.Identifier("p", sort.field),
            direction=direction,
        )

        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(count_query, params)
                count_row = cur.fetchone()
                cur.execute(page_query, [*params, limit, offset])
                rows = cur.fetchall()

        total = count_row["total"] if count_row is not None else 0
        return rows, total

    def stats(self, batch_context: str, month_start: datetime) -> dict[str, Any]:
        """Aggregate counters for one context."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) AS total_processings,
                        COUNT(*) FILTER (
                            WHERE status = 'completed' AND completed_at >= %(month_start)s
                        ) AS completed_this_month,
                        COUNT(*) FILTER (
                            WHERE status IN ('pending', 'processing')
                        ) AS in_progress,
                        COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                        COUNT(*) FILTER (WHERE status = 'error') AS failed,
                        COUNT(*) FILTER (WHERE status = 'partial') AS partial,
                        AVG(EXTRACT(EPOCH FROM (completed_at - started_at)) / 60)
                            FILTER (WHERE status = 'completed') AS average_minutes
                    FROM processing_records
                    WHERE batch_context = %(batch_context)s
                    """,
                    {"batch_context": batch_context, "month_start": month_start},
                )
                totals = cur.fetchone()
                cur.execute(
                    """
                    SELECT COUNT(DISTINCT pf.file_id) AS files_processed
                    FROM processing_files pf
                    JOIN processing_records p ON p.id = pf.processing_id
                    WHERE p.batch_context = %s AND p.status = 'completed'
                    """,
                    (batch_context,),
                )
                files = cur.fetchone()

        result = dict(totals or {})
        result["files_processed"] = files["files_processed"] if files else 0
        return result
