import base64
import uuid
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import psycopg

from docbatch.database.models import FileRecord
from docbatch.database.repositories.file_repository import FileRepository
from docbatch.domain.exceptions import StorageError
from docbatch.domain.kinds import DocumentKind
from docbatch.domain.models import AdmittedFile, CandidateFile
from docbatch.logging.logger import Log


def stored_filename(original: str) -> str:
    """Unique storage name that keeps the original name readable."""
    return f"{uuid.uuid4().hex[:12]}_{original}"


@dataclass(frozen=True)
class AdmissionFailure:
    filename: str
    error: str


@dataclass
class AdmissionReport:
    admitted: list[AdmittedFile] = field(default_factory=list)
    failures: list[AdmissionFailure] = field(default_factory=list)


class FileAdmitter:
    """Turns validated candidates into persisted FileRecords plus transfer encodings."""

    def __init__(self, file_repo: FileRepository, max_workers: int = 4) -> None:
        self._file_repo = file_repo
        self._max_workers = max(1, max_workers)

    def admit(
        self,
        candidate: CandidateFile,
        *,
        batch_context: str,
        kind: DocumentKind,
        period: str,
        uploaded_by: str | None = None,
    ) -> AdmittedFile:
        """Encode one file and persist its pending FileRecord.

        Raises:
            StorageError: if the record cannot be persisted. Nothing is kept
                for this file in that case.
        """
        encoded = base64.b64encode(candidate.content).decode("ascii")
        record = FileRecord(
            id="",
            batch_context=batch_context,
            filename=stored_filename(candidate.filename),
            original_filename=candidate.filename,
            size_bytes=candidate.size_bytes,
            sha256=candidate.sha256,
            declared_period=period,
            kind=kind.code,
            uploaded_by=uploaded_by,
        )
        try:
            stored = self._file_repo.insert(record)
        except psycopg.Error as exc:
            raise StorageError(f"Could not store '{candidate.filename}': {exc}") from exc

        Log.info(
            f"Admitted {candidate.filename} ({candidate.size_bytes} bytes) as file {stored.id}"
        )
        return AdmittedFile(record=stored, encoded_content=encoded)

    def admit_all(
        self,
        candidates: Sequence[CandidateFile],
        *,
        batch_context: str,
        kind: DocumentKind,
        period: str,
        uploaded_by: str | None = None,
    ) -> AdmissionReport:
        """Admit files concurrently; each file succeeds or fails on its own."""
        report = AdmissionReport()
        if not candidates:
            return report

        workers = min(self._max_workers, len(candidates))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="admit") as executor:
            futures = [
                executor.submit(
                    self.admit,
                    candidate,
                    batch_context=batch_context,
                    kind=kind,
                    period=period,
                    uploaded_by=uploaded_by,
                )
                for candidate in candidates
            ]

        for candidate, future in zip(candidates, futures):
            try:
                report.admitted.append(future.result())
            except StorageError as exc:
                Log.error(f"Admission failed for {candidate.filename}: {exc}")
                report.failures.append(AdmissionFailure(candidate.filename, str(exc)))
        return report
