import math
from datetime import datetime, timezone
from typing import Any

from docbatch.database.repositories.history_repository import HistoryRepository
from docbatch.domain.exceptions import ValidationError
from docbatch.domain.state import ALL_STATUSES, TERMINAL_STATUSES
from docbatch.history.models import (
    SORT_DIRECTIONS,
    SORT_FIELDS,
    HistoryFilters,
    HistoryRow,
    HistorySort,
    PaginatedResult,
    ProcessingStats,
)


def _row_to_history(row: dict[str, Any]) -> HistoryRow:
    return HistoryRow(
        id=row["id"],
        kind=row["kind"],
        period=row["period"],
        status=row["status"],
        progress=row["progress"],
        files_count=row["files_count"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        result_url=row["result_url"],
        error_message=row["error_message"],
    )


class HistoryQuery:
    """Paginated, filterable reporting view over processing records of one context."""

    def __init__(self, repo: HistoryRepository, max_per_page: int = 100) -> None:
        self._repo = repo
        self._max_per_page = max_per_page

    def list(
        self,
        batch_context: str,
        filters: HistoryFilters | None = None,
        sort: HistorySort | None = None,
        page: int = 1,
        per_page: int = 10,
    ) -> PaginatedResult[HistoryRow]:
        """Return one 1-based page of history rows.

        Raises:
            ValidationError: on an unknown status, sort field or direction, or
                a page/per_page below 1.
        """
        if not batch_context:
            raise ValidationError("batch_context is required")
        filters = filters or HistoryFilters()
        sort = sort or HistorySort()
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be at least 1")
        if sort.field not in SORT_FIELDS:
            raise ValidationError(
                f"Unknown sort field '{sort.field}'. Choose from: {sorted(SORT_FIELDS)}"
            )
        if sort.direction not in SORT_DIRECTIONS:
            raise ValidationError(f"Unknown sort direction '{sort.direction}'")
        unknown = set(filters.statuses) - ALL_STATUSES
        if unknown:
            raise ValidationError(f"Unknown status filter(s): {sorted(unknown)}")

        per_page = min(per_page, self._max_per_page)
        statuses = tuple(filters.statuses) or tuple(sorted(TERMINAL_STATUSES))
        rows, total = self._repo.search(
            batch_context,
            filters,
            statuses,
            sort,
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        return PaginatedResult(
            data=[_row_to_history(row) for row in rows],
            total=total,
            page=page,
            per_page=per_page,
            total_pages=math.ceil(total / per_page),
        )

    def stats(self, batch_context: str, now: datetime | None = None) -> ProcessingStats:
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        raw = self._repo.stats(batch_context, month_start)

        completed = raw.get("completed") or 0
        finished = completed + (raw.get("failed") or 0) + (raw.get("partial") or 0)
        average = raw.get("average_minutes")
        return ProcessingStats(
            total_processings=raw.get("total_processings") or 0,
            completed_this_month=raw.get("completed_this_month") or 0,
            in_progress=raw.get("in_progress") or 0,
            total_files_processed=raw.get("files_processed") or 0,
            average_processing_minutes=round(float(average), 1) if average is not None else None,
            success_rate=round(completed * 100 / finished, 1) if finished else None,
            by_status={
                "completed": completed,
                "error": raw.get("failed") or 0,
                "partial": raw.get("partial") or 0,
                "active": raw.get("in_progress") or 0,
            },
        )
