from dataclasses import dataclass
from typing import Any

from docbatch.config.settings import Settings
from docbatch.domain.exceptions import ArtifactDownloadError, StateError, ValidationError
from docbatch.domain.models import ProcessingRecord
from docbatch.domain.period import period_slug
from docbatch.domain.state import (
    ALL_STATUSES,
    COMPLETED,
    ERROR,
    PENDING,
    PROCESSING,
    ProcessingPatch,
)
from docbatch.logging.logger import Log
from docbatch.processing.manager import ProcessingRecordManager
from docbatch.reconcile.artifacts import ArtifactFetcher, default_artifact_name
from docbatch.reconcile.reply import WorkerReply

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"

DOWNLOAD_FAILED_NOTE = "Processing finished upstream but the result could not be downloaded"


@dataclass(frozen=True)
class CallbackUpdate:
    """Status report pushed by the worker for one processing record."""

    processing_id: str
    status: str
    progress: int | None = None
    result_ref: str | None = None
    error_message: str | None = None
    estimated_time_minutes: int | None = None
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class CallbackOutcome:
    processing_id: str
    outcome: str
    record: ProcessingRecord


def _matches_terminal(record: ProcessingRecord, update: CallbackUpdate) -> bool:
    if update.status != record.status:
        return False
    if record.status == COMPLETED:
        return update.result_ref in (None, record.result_url)
    return update.error_message in (None, record.error_message)


class Reconciler:
    """Folds worker results (synchronous replies and callbacks) into processing records."""

    def __init__(
        self,
        manager: ProcessingRecordManager,
        fetcher: ArtifactFetcher,
        settings: Settings,
    ) -> None:
        self._manager = manager
        self._fetcher = fetcher
        self._artifact_progress = settings.artifact_progress

    def reconcile_reply(self, record: ProcessingRecord, reply: WorkerReply) -> ProcessingRecord:
        """Finish a record whose dispatch reply already pointed at the result."""
        if not reply.result_ref:
            return record
        return self._complete_with_artifact(record, reply.result_ref, reply.result_filename)

    def retry_artifact(self, processing_id: str) -> ProcessingRecord:
        """Re-run the download for a record still holding an upstream result reference.

        Raises:
            ProcessingNotFoundError: if the record does not exist.
            StateError: if the record has no pending result reference.
        """
        record = self._manager.require(processing_id)
        if record.result_ref is None:
            raise StateError(
                f"Processing {processing_id} has no result waiting to be downloaded"
            )
        Log.info(f"Retrying artifact download for processing {processing_id}")
        return self._complete_with_artifact(record, record.result_ref, None)

    def apply_callback(self, update: CallbackUpdate) -> CallbackOutcome:
        """Apply a worker callback.

        Callbacks for terminal records change nothing: a repeat of the stored
        outcome is reported as ``duplicate`` and anything else as ``ignored``.

        Raises:
            ProcessingNotFoundError: for unknown ids.
            ValidationError: for an unknown status.
            StateError: if the update conflicts with the stored state.
        """
        if update.status not in ALL_STATUSES:
            raise ValidationError(f"Unknown status '{update.status}'")

        record = self._manager.require(update.processing_id)
        if record.is_terminal:
            outcome = DUPLICATE if _matches_terminal(record, update) else IGNORED
            Log.info(
                f"Callback for {record.status} processing {record.id} "
                f"({update.status}) {outcome}"
            )
            return CallbackOutcome(record.id, outcome, record)

        status = PROCESSING if update.status == PENDING else update.status
        progress = None
        if update.progress is not None:
            progress = max(min(update.progress, 100), record.progress)

        if status == COMPLETED and update.result_ref:
            updated = self._manager.update(
                record.id,
                ProcessingPatch(
                    estimated_time_minutes=update.estimated_time_minutes,
                    worker_response=update.payload,
                ),
            )
            self._append_callback_log(updated, update, status)
            stored = self._complete_with_artifact(updated, update.result_ref, None)
            return CallbackOutcome(record.id, APPLIED, stored)

        message = update.error_message
        if status == ERROR and not (message or "").strip():
            message = "Worker reported an error without details"

        stored = self._manager.update(
            record.id,
            ProcessingPatch(
                status=status,
                progress=progress,
                result_ref=update.result_ref if status == PROCESSING else None,
                error_message=message,
                estimated_time_minutes=update.estimated_time_minutes,
                worker_response=update.payload,
            ),
        )
        if stored.version == record.version:
            return CallbackOutcome(record.id, DUPLICATE, stored)

        self._append_callback_log(stored, update, status)
        return CallbackOutcome(record.id, APPLIED, stored)

    def _append_callback_log(
        self,
        record: ProcessingRecord,
        update: CallbackUpdate,
        status: str,
    ) -> None:
        level = "error" if status == ERROR else "info"
        message = f"Worker reported {update.status} ({record.progress}%)"
        if status == ERROR and record.error_message:
            message = f"Worker reported an error: {record.error_message}"
        self._manager.append_log(record.id, level, message, update.payload or {})

    def _complete_with_artifact(
        self,
        record: ProcessingRecord,
        result_ref: str,
        filename: str | None,
    ) -> ProcessingRecord:
        staged = self._manager.update(
            record.id,
            ProcessingPatch(
                status=PROCESSING,
                progress=max(record.progress, self._artifact_progress),
                result_ref=result_ref,
            ),
        )
        fallback = f"{staged.kind}_{period_slug(staged.period)}.xlsx"
        try:
            artifact = self._fetcher.fetch(
                result_ref,
                batch_context=staged.batch_context,
                processing_id=staged.id,
                filename=filename or default_artifact_name(result_ref, fallback),
            )
        except ArtifactDownloadError as exc:
            note = f"{DOWNLOAD_FAILED_NOTE}: {exc}"
            Log.warning(f"Processing {staged.id}: {note}")
            flagged = self._manager.update(
                staged.id, ProcessingPatch(status=PROCESSING, error_message=note)
            )
            self._manager.append_log(staged.id, "warn", note, {"result_ref": result_ref})
            return flagged

        completed = self._manager.update(
            staged.id, ProcessingPatch(status=COMPLETED, result_url=result_ref)
        )
        self._manager.append_log(
            staged.id,
            "info",
            "Result artifact retrieved",
            {
                "source_url": artifact.source_url,
                "path": str(artifact.path),
                "size_bytes": artifact.size_bytes,
            },
        )
        return completed
