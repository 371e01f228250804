from collections.abc import Callable
from dataclasses import dataclass

from docbatch.database.models import ProcessingLogEntry
from docbatch.domain.models import ProcessingRecord

NEW_BATCH = "new_batch"
STATUS_CHANGED = "status_changed"
PROGRESS = "progress"
RECORD_UPDATED = "record_updated"
LOG_APPENDED = "log_appended"

ALL = "ALL"


@dataclass(frozen=True)
class WatchEvent:
    """One change delivered to a watch callback."""

    type: str
    processing_id: str
    record: ProcessingRecord | None = None
    log_entry: ProcessingLogEntry | None = None
    previous_status: str | None = None


@dataclass(frozen=True)
class ChangeNotification:
    """Decoded pg_notify payload from one of the change channels."""

    channel: str
    id: str
    processing_id: str
    batch_context: str | None = None
    version: int | None = None
    status: str | None = None


WatchCallback = Callable[[WatchEvent], None]
NotificationCallback = Callable[[ChangeNotification], None]


def crossed_step(previous: int, current: int, step: int) -> bool:
    """True when progress moved into a new ``step``-sized band (25 -> 0/25/50/75/100)."""
    if step <= 0:
        return current != previous
    return current // step > previous // step
