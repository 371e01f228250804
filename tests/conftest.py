import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import psycopg
import pytest

from docbatch.config.settings import Settings
from docbatch.database.models import (
    FILE_COMPLETED,
    FILE_ERROR,
    FILE_PENDING,
    FILE_PROCESSING,
    FileRecord,
    ProcessingLogEntry,
)
from docbatch.domain.exceptions import DuplicateDispatchError, ValidationError
from docbatch.domain.kinds import KindRegistry
from docbatch.domain.models import CandidateFile, ProcessingRecord
from docbatch.domain.state import Pending
from docbatch.processing.manager import ProcessingRecordManager

PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF\n"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeFileRepository:
    """In-memory stand-in for FileRepository."""

    def __init__(self) -> None:
        self.rows: dict[str, FileRecord] = {}
        self.links: dict[str, list[str]] = {}
        self.fail_for: set[str] = set()
        self._lock = threading.Lock()

    def insert(self, record: FileRecord) -> FileRecord:
        if record.original_filename in self.fail_for:
            raise psycopg.OperationalError("connection to server was lost")
        now = _now()
        stored = replace(
            record,
            id=str(uuid.uuid4()),
            status=FILE_PENDING,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.rows[stored.id] = stored
        return stored

    def find_by_processing(self, processing_id: str) -> list[FileRecord]:
        return [self.rows[file_id] for file_id in self.links.get(processing_id, [])]

    def _move(self, file_ids: list[str], allowed: tuple[str, ...], **changes: Any) -> None:
        for file_id in file_ids:
            row = self.rows.get(file_id)
            if row is not None and row.status in allowed:
                self.rows[file_id] = replace(row, updated_at=_now(), **changes)

    def mark_processing(self, file_ids: list[str]) -> None:
        self._move(file_ids, (FILE_PENDING,), status=FILE_PROCESSING)

    def mark_completed(
        self,
        file_ids: list[str],
        result_ref: str | None,
        extracted_data: dict[str, Any] | None = None,
    ) -> None:
        self._move(
            file_ids,
            (FILE_PENDING, FILE_PROCESSING),
            status=FILE_COMPLETED,
            result_ref=result_ref,
            extracted_data=extracted_data,
            processed_at=_now(),
        )

    def mark_failed(self, file_ids: list[str], error: str) -> None:
        self._move(
            file_ids,
            (FILE_PENDING, FILE_PROCESSING),
            status=FILE_ERROR,
            error_message=error,
            processed_at=_now(),
        )


class FakeProcessingRepository:
    """In-memory stand-in for ProcessingRepository with version-checked writes."""

    def __init__(self, file_repo: FakeFileRepository) -> None:
        self.file_repo = file_repo
        self.records: dict[str, ProcessingRecord] = {}
        self.lose_next_writes = 0
        self.cas_calls = 0
        self._lock = threading.Lock()

    def create(
        self,
        *,
        batch_context: str,
        kind: str,
        period: str,
        file_ids: list[str],
        initiated_by: str | None,
    ) -> ProcessingRecord:
        with self._lock:
            missing = [
                file_id
                for file_id in file_ids
                if file_id not in self.file_repo.rows
                or self.file_repo.rows[file_id].batch_context != batch_context
            ]
            if missing:
                raise ValidationError(f"Unknown files for this batch: {missing}")
            digests = {self.file_repo.rows[file_id].sha256 for file_id in file_ids}
            for record in self.records.values():
                if not record.is_active or record.batch_context != batch_context:
                    continue
                active_digests = {self.file_repo.rows[f].sha256 for f in record.file_ids}
                if set(record.file_ids) & set(file_ids) or active_digests & digests:
                    raise DuplicateDispatchError(
                        f"Files are already being processed by {record.id}"
                    )
            now = _now()
            record = ProcessingRecord(
                id=str(uuid.uuid4()),
                batch_context=batch_context,
                kind=kind,
                period=period,
                file_ids=tuple(file_ids),
                state=Pending(),
                started_at=now,
                initiated_by=initiated_by,
                updated_at=now,
            )
            self.records[record.id] = record
            self.file_repo.links[record.id] = list(file_ids)
            return record

    def find_by_id(self, processing_id: str) -> ProcessingRecord | None:
        return self.records.get(processing_id)

    def list_active(self, batch_context: str) -> list[ProcessingRecord]:
        active = [
            record
            for record in self.records.values()
            if record.batch_context == batch_context and record.is_active
        ]
        return sorted(active, key=lambda r: r.started_at, reverse=True)

    def compare_and_swap(
        self,
        record: ProcessingRecord,
        expected_version: int,
    ) -> ProcessingRecord | None:
        with self._lock:
            self.cas_calls += 1
            stored = self.records[record.id]
            if self.lose_next_writes > 0:
                self.lose_next_writes -= 1
                self.records[record.id] = replace(stored, version=stored.version + 1)
                return None
            if stored.version != expected_version:
                return None
            written = replace(
                record,
                version=expected_version + 1,
                updated_at=_now(),
                cancel_requested=stored.cancel_requested,
            )
            self.records[record.id] = written
            return written

    def request_cancel(self, processing_id: str) -> bool:
        with self._lock:
            stored = self.records.get(processing_id)
            if stored is None or not stored.is_active:
                return False
            self.records[processing_id] = replace(
                stored, cancel_requested=True, version=stored.version + 1
            )
            return True

    def age(self, processing_id: str, minutes: int) -> None:
        """Move a record's start time into the past."""
        stored = self.records[processing_id]
        self.records[processing_id] = replace(
            stored, started_at=stored.started_at - timedelta(minutes=minutes)
        )


class FakeLogRepository:
    """In-memory stand-in for LogRepository."""

    def __init__(self) -> None:
        self.entries: list[ProcessingLogEntry] = []

    def append(
        self,
        processing_id: str,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessingLogEntry:
        entry = ProcessingLogEntry(
            id=str(uuid.uuid4()),
            processing_id=processing_id,
            level=level,
            message=message,
            metadata=metadata or {},
            created_at=_now(),
        )
        self.entries.append(entry)
        return entry

    def list_for(self, processing_id: str) -> list[ProcessingLogEntry]:
        return [entry for entry in self.entries if entry.processing_id == processing_id]

    def find_by_id(self, entry_id: str) -> ProcessingLogEntry | None:
        return next((entry for entry in self.entries if entry.id == entry_id), None)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        worker_endpoint="https://worker.test/webhook/process-batch",
        public_base_url="https://docbatch.test",
        results_root=tmp_path / "results",
        dispatch_backoff_base_seconds=2.0,
        watch_poll_seconds_single=0.01,
        watch_poll_seconds_all=0.01,
    )


@pytest.fixture()
def kinds(settings: Settings) -> KindRegistry:
    return KindRegistry.from_settings(settings)


@pytest.fixture()
def file_repo() -> FakeFileRepository:
    return FakeFileRepository()


@pytest.fixture()
def processing_repo(file_repo: FakeFileRepository) -> FakeProcessingRepository:
    return FakeProcessingRepository(file_repo)


@pytest.fixture()
def log_repo() -> FakeLogRepository:
    return FakeLogRepository()


@pytest.fixture()
def manager(
    processing_repo: FakeProcessingRepository,
    file_repo: FakeFileRepository,
    log_repo: FakeLogRepository,
) -> ProcessingRecordManager:
    return ProcessingRecordManager(processing_repo, file_repo, log_repo)  # type: ignore[arg-type]


@pytest.fixture()
def make_pdf():
    """Factory for payslip candidates with distinct content."""

    def _make(
        name: str = "payslip.pdf",
        extra: bytes = b"",
        media_type: str | None = "application/pdf",
    ) -> CandidateFile:
        return CandidateFile(
            filename=name,
            content=PDF_BYTES + name.encode("utf-8") + extra,
            media_type=media_type,
        )

    return _make


@pytest.fixture()
def seed_files(file_repo: FakeFileRepository):
    """Factory inserting pending file rows and returning their ids."""

    def _seed(count: int, batch_context: str = "acct-1", kind: str = "payslip") -> list[str]:
        ids = []
        for index in range(count):
            stored = file_repo.insert(
                FileRecord(
                    id="",
                    batch_context=batch_context,
                    filename=f"x_{index}.pdf",
                    original_filename=f"file_{index}.pdf",
                    size_bytes=100 + index,
                    sha256=uuid.uuid4().hex * 2,
                    declared_period="03/2024",
                    kind=kind,
                )
            )
            ids.append(stored.id)
        return ids

    return _seed
