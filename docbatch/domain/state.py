"""Processing record lifecycle expressed as a closed set of state variants.

Each variant only carries the fields that are meaningful for its status, so
"result URL on a failed record" or "completion time on a running record"
cannot be represented. ``next_state`` is the single place where transitions
are checked.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from docbatch.domain.exceptions import StateError

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"
PARTIAL = "partial"

ALL_STATUSES = frozenset({PENDING, PROCESSING, COMPLETED, ERROR, PARTIAL})
TERMINAL_STATUSES = frozenset({COMPLETED, ERROR, PARTIAL})
ACTIVE_STATUSES = frozenset({PENDING, PROCESSING})


@dataclass(frozen=True)
class Pending:
    """Record created, dispatch not yet acknowledged."""

    progress: int = 0
    status: str = field(default=PENDING, init=False)


@dataclass(frozen=True)
class Processing:
    """Worker accepted the batch.

    ``note`` flags a recoverable problem (the worker finished but the artifact
    could not be retrieved yet); ``result_ref`` keeps the upstream artifact
    reference so the download can be retried.
    """

    progress: int
    note: str | None = None
    result_ref: str | None = None
    status: str = field(default=PROCESSING, init=False)


@dataclass(frozen=True)
class Completed:
    completed_at: datetime
    result_url: str | None = None
    progress: int = 100
    status: str = field(default=COMPLETED, init=False)


@dataclass(frozen=True)
class Failed:
    message: str
    completed_at: datetime
    progress: int = 0
    status: str = field(default=ERROR, init=False)


@dataclass(frozen=True)
class Partial:
    completed_at: datetime
    progress: int = 0
    message: str | None = None
    status: str = field(default=PARTIAL, init=False)


ProcessingState = Pending | Processing | Completed | Failed | Partial


def is_terminal(state: ProcessingState) -> bool:
    return state.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ProcessingPatch:
    """Partial update requested for a processing record. ``None`` means unchanged."""

    status: str | None = None
    progress: int | None = None
    result_url: str | None = None
    result_ref: str | None = None
    error_message: str | None = None
    estimated_time_minutes: int | None = None
    worker_response: dict[str, Any] | None = None


def _repeats_terminal(current: ProcessingState, patch: ProcessingPatch) -> bool:
    if patch.status not in (None, current.status):
        return False
    if isinstance(current, Completed):
        return patch.result_url in (None, current.result_url)
    if isinstance(current, (Failed, Partial)):
        return patch.error_message in (None, current.message)
    return False


def next_state(
    current: ProcessingState,
    patch: ProcessingPatch,
    now: datetime,
) -> ProcessingState:
    """Compute the state a patch leads to, or raise StateError.

    Re-applying the outcome a terminal record already has returns ``current``
    unchanged, which makes terminal updates idempotent.
    """
    target = patch.status or current.status
    if target not in ALL_STATUSES:
        raise StateError(f"Unknown status '{target}'")
    if patch.result_url is not None and target != COMPLETED:
        raise StateError("result_url can only be set on a completed processing")

    if is_terminal(current):
        if _repeats_terminal(current, patch):
            return current
        raise StateError(
            f"Processing is already {current.status}; cannot move to {target}"
        )

    progress = current.progress if patch.progress is None else patch.progress
    if not 0 <= progress <= 100:
        raise StateError(f"Progress must be between 0 and 100, got {progress}")
    if progress < current.progress:
        raise StateError(
            f"Progress cannot decrease from {current.progress} to {progress}"
        )

    if target == PENDING:
        if current.status != PENDING:
            raise StateError(f"Processing cannot return to pending from {current.status}")
        return Pending(progress=progress)

    if target == PROCESSING:
        previous = current if isinstance(current, Processing) else None
        note = patch.error_message
        if note is None and previous is not None:
            note = previous.note
        result_ref = patch.result_ref
        if result_ref is None and previous is not None:
            result_ref = previous.result_ref
        return Processing(progress=progress, note=note, result_ref=result_ref)

    if target == COMPLETED:
        return Completed(completed_at=now, result_url=patch.result_url)

    if target == ERROR:
        message = (patch.error_message or "").strip()
        if not message:
            raise StateError("An error state requires a non-empty error message")
        return Failed(message=message, completed_at=now, progress=progress)

    return Partial(completed_at=now, progress=progress, message=patch.error_message)
