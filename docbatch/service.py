import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from docbatch.config.settings import Settings
from docbatch.database.models import FileRecord, ProcessingLogEntry
from docbatch.database.repositories.file_repository import FileRepository
from docbatch.database.repositories.history_repository import HistoryRepository
from docbatch.database.repositories.log_repository import LogRepository
from docbatch.database.repositories.processing_repository import ProcessingRepository
from docbatch.dispatch.client import WorkerClient
from docbatch.dispatch.engine import DispatchEngine, DispatchOutcome
from docbatch.domain.exceptions import DuplicateDispatchError, ValidationError
from docbatch.domain.kinds import KindRegistry
from docbatch.domain.models import CandidateFile, ProcessingRecord
from docbatch.domain.period import validate_period
from docbatch.history.models import (
    HistoryFilters,
    HistoryRow,
    HistorySort,
    PaginatedResult,
    ProcessingStats,
)
from docbatch.history.query import HistoryQuery
from docbatch.ingestion.admission import FileAdmitter
from docbatch.ingestion.validator import FileValidator, ValidationResult
from docbatch.logging.logger import Log
from docbatch.processing.manager import ProcessingRecordManager
from docbatch.reconcile.artifacts import ArtifactFetcher
from docbatch.reconcile.reconciler import CallbackOutcome, CallbackUpdate, Reconciler
from docbatch.watch.events import WatchCallback
from docbatch.watch.listener import ChangeListener
from docbatch.watch.watcher import Watch


@dataclass(frozen=True)
class RejectedFile:
    filename: str
    errors: list[str]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubmissionResult:
    """What happened to a submitted batch: the record after dispatch and each file's fate."""

    record: ProcessingRecord
    admitted: list[FileRecord]
    rejected: list[RejectedFile]
    dispatch: DispatchOutcome
    warnings: dict[str, list[str]] = field(default_factory=dict)


def _describe_rejections(rejected: Sequence[RejectedFile]) -> str:
    return "; ".join(f"{r.filename}: {', '.join(r.errors)}" for r in rejected)


class BatchService:
    """Entry point for submitting batches and following them through processing."""

    def __init__(
        self,
        *,
        settings: Settings,
        kinds: KindRegistry,
        validator: FileValidator,
        admitter: FileAdmitter,
        manager: ProcessingRecordManager,
        engine: DispatchEngine,
        reconciler: Reconciler,
        history: HistoryQuery,
        listener: ChangeListener | None = None,
    ) -> None:
        self._settings = settings
        self._kinds = kinds
        self._validator = validator
        self._admitter = admitter
        self._manager = manager
        self._engine = engine
        self._reconciler = reconciler
        self._history = history
        self._listener = listener
        self._watches: set[Watch] = set()
        self._watches_lock = threading.Lock()

    @property
    def kinds(self) -> KindRegistry:
        return self._kinds

    def attach_listener(self, listener: ChangeListener | None) -> None:
        """Use push notifications for watches created from now on."""
        self._listener = listener

    def submit_batch(
        self,
        batch_context: str,
        kind: str,
        period: str,
        files: Sequence[CandidateFile],
        initiated_by: str | None = None,
        existing_batch: Sequence[CandidateFile] = (),
    ) -> SubmissionResult:
        """Validate, store and dispatch a batch of files.

        Files that fail validation or storage are reported in ``rejected``; the
        rest go out as one processing.

        Raises:
            ValidationError: for an unknown kind, an invalid period, or when no
                file survives validation and admission.
            DuplicateDispatchError: if the files are already being processed.
        """
        if not batch_context:
            raise ValidationError("batch_context is required")
        document_kind = self._kinds.get(kind)
        period_errors = validate_period(period)
        if period_errors:
            raise ValidationError("; ".join(period_errors))
        if not files:
            raise ValidationError("No files were submitted")

        results = self._validator.validate(files, existing_batch, document_kind)
        valid = [candidate for candidate, result in zip(files, results) if result.is_valid]
        rejected = [
            RejectedFile(result.filename, result.errors, result.warnings)
            for result in results
            if not result.is_valid
        ]
        warnings = _warnings_by_file(results)

        report = self._admitter.admit_all(
            valid,
            batch_context=batch_context,
            kind=document_kind,
            period=period,
            uploaded_by=initiated_by,
        )
        rejected.extend(
            RejectedFile(failure.filename, [failure.error]) for failure in report.failures
        )
        if not report.admitted:
            raise ValidationError(
                f"No file could be accepted: {_describe_rejections(rejected)}"
            )
        if rejected:
            Log.warning(
                f"Submitting {len(report.admitted)} of {len(files)} file(s); "
                f"rejected: {_describe_rejections(rejected)}"
            )

        file_ids = [admitted.record.id for admitted in report.admitted]
        try:
            processing_id = self._manager.create(
                batch_context=batch_context,
                kind=document_kind,
                period=period,
                file_ids=file_ids,
                initiated_by=initiated_by,
            )
        except DuplicateDispatchError as exc:
            Log.warning(f"Refusing batch for {batch_context}: {exc}")
            self._manager.release_files(file_ids, str(exc))
            raise
        record = self._manager.require(processing_id)
        outcome = self._engine.dispatch(record, report.admitted)
        return SubmissionResult(
            record=outcome.record,
            admitted=[admitted.record for admitted in report.admitted],
            rejected=rejected,
            dispatch=outcome,
            warnings=warnings,
        )

    def get_status(self, processing_id: str) -> ProcessingRecord:
        return self._manager.require(processing_id)

    def get_logs(self, processing_id: str) -> list[ProcessingLogEntry]:
        self._manager.require(processing_id)
        return self._manager.logs(processing_id)

    def get_files(self, processing_id: str) -> list[FileRecord]:
        self._manager.require(processing_id)
        return self._manager.files_for(processing_id)

    def watch(
        self,
        target: str,
        on_change: WatchCallback,
        batch_context: str | None = None,
    ) -> Watch:
        """Start delivering changes for one record id, or ``ALL`` active batches of a context."""
        watch = Watch(
            target=target,
            callback=on_change,
            manager=self._manager,
            settings=self._settings,
            batch_context=batch_context,
            listener=self._listener,
        )
        watch.start()
        with self._watches_lock:
            self._watches.add(watch)
        return watch

    def unwatch(self, watch: Watch) -> None:
        watch.stop()
        with self._watches_lock:
            self._watches.discard(watch)

    def list_history(
        self,
        batch_context: str,
        filters: HistoryFilters | None = None,
        sort: HistorySort | None = None,
        page: int = 1,
        per_page: int = 10,
    ) -> PaginatedResult[HistoryRow]:
        return self._history.list(batch_context, filters, sort, page, per_page)

    def get_stats(self, batch_context: str, now: datetime | None = None) -> ProcessingStats:
        return self._history.stats(batch_context, now)

    def request_cancel(self, processing_id: str) -> bool:
        return self._manager.request_cancel(processing_id)

    def retry_artifact(self, processing_id: str) -> ProcessingRecord:
        return self._reconciler.retry_artifact(processing_id)

    def handle_callback(self, update: CallbackUpdate) -> CallbackOutcome:
        return self._reconciler.apply_callback(update)

    def close(self) -> None:
        """Stop every open watch."""
        with self._watches_lock:
            watches = list(self._watches)
            self._watches.clear()
        for watch in watches:
            watch.stop()


def _warnings_by_file(results: Sequence[ValidationResult]) -> dict[str, list[str]]:
    return {result.filename: result.warnings for result in results if result.warnings}


def build_service(settings: Settings, listener: ChangeListener | None = None) -> BatchService:
    """Wire the service with database-backed repositories and HTTP clients."""
    kinds = KindRegistry.from_settings(settings)
    file_repo = FileRepository()
    manager = ProcessingRecordManager(ProcessingRepository(), file_repo, LogRepository())
    reconciler = Reconciler(manager, ArtifactFetcher(settings), settings)
    engine = DispatchEngine(manager, WorkerClient(settings), reconciler, kinds, settings)
    return BatchService(
        settings=settings,
        kinds=kinds,
        validator=FileValidator(),
        admitter=FileAdmitter(file_repo, settings.admission_concurrency),
        manager=manager,
        engine=engine,
        reconciler=reconciler,
        history=HistoryQuery(HistoryRepository(), settings.history_max_per_page),
        listener=listener,
    )
