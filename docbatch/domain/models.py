import hashlib
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import Any

from docbatch.database.models import FileRecord
from docbatch.domain.state import (
    ACTIVE_STATUSES,
    Completed,
    Failed,
    Partial,
    Processing,
    ProcessingState,
    is_terminal,
)


@dataclass(frozen=True)
class CandidateFile:
    """A file offered for admission, before anything is persisted."""

    filename: str
    content: bytes
    media_type: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @cached_property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


@dataclass(frozen=True)
class AdmittedFile:
    """A persisted file plus its transfer encoding, held only until dispatch."""

    record: FileRecord
    encoded_content: str


@dataclass(frozen=True)
class ProcessingRecord:
    """One submitted batch and where it is in its lifecycle."""

    id: str
    batch_context: str
    kind: str
    period: str
    file_ids: tuple[str, ...]
    state: ProcessingState
    started_at: datetime
    initiated_by: str | None = None
    updated_at: datetime | None = None
    estimated_time_minutes: int | None = None
    worker_response: dict[str, Any] | None = None
    cancel_requested: bool = False
    version: int = 1

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def progress(self) -> int:
        return self.state.progress

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    @property
    def is_active(self) -> bool:
        return self.state.status in ACTIVE_STATUSES

    @property
    def result_url(self) -> str | None:
        if isinstance(self.state, Completed):
            return self.state.result_url
        return None

    @property
    def result_ref(self) -> str | None:
        """Artifact reference known upstream but not yet retrieved."""
        if isinstance(self.state, Processing):
            return self.state.result_ref
        return None

    @property
    def error_message(self) -> str | None:
        if isinstance(self.state, (Failed, Partial)):
            return self.state.message
        if isinstance(self.state, Processing):
            return self.state.note
        return None

    @property
    def completed_at(self) -> datetime | None:
        if isinstance(self.state, (Completed, Failed, Partial)):
            return self.state.completed_at
        return None

