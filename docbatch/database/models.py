import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

FILE_PENDING = "pending"
FILE_PROCESSING = "processing"
FILE_COMPLETED = "completed"
FILE_ERROR = "error"


@dataclass
class FileRecord:
    """Represents a row from the batch_files table."""

    id: str
    batch_context: str
    filename: str
    original_filename: str
    size_bytes: int
    sha256: str
    declared_period: str
    kind: str
    status: str = FILE_PENDING
    result_ref: str | None = None
    extracted_data: dict[str, Any] | None = None
    error_message: str | None = None
    uploaded_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass
class ProcessingLogEntry:
    """Represents a row from the processing_logs table."""

    id: str
    processing_id: str
    level: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


LOG_LEVELS = frozenset({"debug", "info", "warn", "error"})


def is_uuid(value: str) -> bool:
    """True when ``value`` parses as a UUID, the format of every generated id."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
