from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

from docbatch.domain.state import COMPLETED

T = TypeVar("T")

SORT_FIELDS = frozenset({"started_at", "completed_at", "period", "status", "progress"})
SORT_DIRECTIONS = frozenset({"asc", "desc"})


@dataclass(frozen=True)
class HistoryFilters:
    """Optional narrowing of a history listing. Empty ``statuses`` means all terminal ones."""

    statuses: tuple[str, ...] = ()
    period: str | None = None
    kind: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None


@dataclass(frozen=True)
class HistorySort:
    field: str = "started_at"
    direction: str = "desc"


@dataclass(frozen=True)
class HistoryRow:
    id: str
    kind: str
    period: str
    status: str
    progress: int
    files_count: int
    started_at: datetime
    completed_at: datetime | None = None
    result_url: str | None = None
    error_message: str | None = None

    @property
    def can_download(self) -> bool:
        return self.status == COMPLETED and bool(self.result_url)

    @property
    def processing_time_minutes(self) -> int | None:
        if self.completed_at is None or self.started_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds() / 60)


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    data: list[T]
    total: int
    page: int
    per_page: int
    total_pages: int


@dataclass(frozen=True)
class ProcessingStats:
    total_processings: int = 0
    completed_this_month: int = 0
    in_progress: int = 0
    total_files_processed: int = 0
    average_processing_minutes: float | None = None
    success_rate: float | None = None
    by_status: dict[str, int] = field(default_factory=dict)
