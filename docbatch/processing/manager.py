from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from docbatch.database.models import LOG_LEVELS, FileRecord, ProcessingLogEntry
from docbatch.database.repositories.file_repository import FileRepository
from docbatch.database.repositories.log_repository import LogRepository
from docbatch.database.repositories.processing_repository import ProcessingRepository
from docbatch.domain.exceptions import (
    ConcurrentUpdateError,
    ProcessingNotFoundError,
    ValidationError,
)
from docbatch.domain.kinds import DocumentKind
from docbatch.domain.models import ProcessingRecord
from docbatch.domain.state import (
    COMPLETED,
    ERROR,
    PARTIAL,
    PROCESSING,
    ProcessingPatch,
    next_state,
)
from docbatch.logging.logger import Log

MAX_UPDATE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingRecordManager:
    """Creates processing records and applies every state change to them.

    All writes go through ``update``, which checks the transition with
    ``next_state`` and persists it with a compare-and-swap on ``version``.
    """

    def __init__(
        self,
        processing_repo: ProcessingRepository,
        file_repo: FileRepository,
        log_repo: LogRepository,
    ) -> None:
        self._processing_repo = processing_repo
        self._file_repo = file_repo
        self._log_repo = log_repo

    def create(
        self,
        *,
        batch_context: str,
        kind: DocumentKind,
        period: str,
        file_ids: list[str],
        initiated_by: str | None = None,
    ) -> str:
        """Create a pending record for the files and return its id.

        Raises:
            ValidationError: if ``file_ids`` is empty, over the kind's cap or
                contains unknown ids.
            DuplicateDispatchError: if a file already belongs to an active record.
        """
        if not file_ids:
            raise ValidationError("A processing needs at least one file")
        if len(file_ids) > kind.batch_cap:
            raise ValidationError(
                f"{kind.label} batches hold at most {kind.batch_cap} files, got {len(file_ids)}"
            )
        if len(set(file_ids)) != len(file_ids):
            raise ValidationError("The same file cannot appear twice in one processing")

        record = self._processing_repo.create(
            batch_context=batch_context,
            kind=kind.code,
            period=period,
            file_ids=list(file_ids),
            initiated_by=initiated_by,
        )
        Log.info(
            f"Created processing {record.id} for {len(file_ids)} {kind.code} file(s), "
            f"period {period}"
        )
        return record.id

    def get(self, processing_id: str) -> ProcessingRecord | None:
        return self._processing_repo.find_by_id(processing_id)

    def require(self, processing_id: str) -> ProcessingRecord:
        record = self._processing_repo.find_by_id(processing_id)
        if record is None:
            raise ProcessingNotFoundError(f"Processing {processing_id} not found")
        return record

    def list_active(self, batch_context: str) -> list[ProcessingRecord]:
        return self._processing_repo.list_active(batch_context)

    def update(self, processing_id: str, patch: ProcessingPatch) -> ProcessingRecord:
        """Apply a patch atomically and return the stored record.

        A patch that repeats a terminal outcome returns the record unchanged.

        Raises:
            ProcessingNotFoundError: if the record does not exist.
            StateError: if the transition is not allowed. Nothing is written.
            ConcurrentUpdateError: if concurrent writers keep winning the race.
        """
        for _attempt in range(MAX_UPDATE_ATTEMPTS):
            current = self.require(processing_id)
            state = next_state(current.state, patch, _utcnow())
            if state is current.state:
                return current

            updated = replace(
                current,
                state=state,
                estimated_time_minutes=(
                    patch.estimated_time_minutes
                    if patch.estimated_time_minutes is not None
                    else current.estimated_time_minutes
                ),
                worker_response=(
                    patch.worker_response
                    if patch.worker_response is not None
                    else current.worker_response
                ),
            )
            if updated == current:
                return current

            stored = self._processing_repo.compare_and_swap(updated, current.version)
            if stored is None:
                Log.debug(f"Processing {processing_id} changed concurrently, retrying update")
                continue

            if stored.status != current.status:
                Log.info(f"Processing {processing_id}: {current.status} -> {stored.status}")
                self._propagate_to_files(stored)
            return stored

        raise ConcurrentUpdateError(
            f"Processing {processing_id} kept changing; gave up after {MAX_UPDATE_ATTEMPTS} attempts"
        )

    def _propagate_to_files(self, record: ProcessingRecord) -> None:
        file_ids = list(record.file_ids)
        if not file_ids:
            return
        if record.status == PROCESSING:
            self._file_repo.mark_processing(file_ids)
        elif record.status == COMPLETED:
            self._file_repo.mark_completed(file_ids, record.result_url)
        elif record.status in (ERROR, PARTIAL):
            self._file_repo.mark_failed(
                file_ids, record.error_message or f"Processing ended as {record.status}"
            )

    def release_files(self, file_ids: list[str], reason: str) -> None:
        """Fail stored files that never made it into a processing record."""
        if file_ids:
            self._file_repo.mark_failed(list(file_ids), reason)

    def files_for(self, processing_id: str) -> list[FileRecord]:
        return self._file_repo.find_by_processing(processing_id)

    def logs(self, processing_id: str) -> list[ProcessingLogEntry]:
        return self._log_repo.list_for(processing_id)

    def find_log(self, entry_id: str) -> ProcessingLogEntry | None:
        return self._log_repo.find_by_id(entry_id)

    def append_log(
        self,
        processing_id: str,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessingLogEntry:
        if level not in LOG_LEVELS:
            raise ValidationError(f"Unknown log level '{level}'")
        return self._log_repo.append(processing_id, level, message, metadata)

    def request_cancel(self, processing_id: str) -> bool:
        """Flag an active record so in-flight dispatch retries stop."""
        self.require(processing_id)
        flagged = self._processing_repo.request_cancel(processing_id)
        if flagged:
            Log.info(f"Cancellation requested for processing {processing_id}")
        else:
            Log.warning(f"Processing {processing_id} is not active; cancel ignored")
        return flagged
