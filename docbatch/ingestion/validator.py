from collections.abc import Sequence
from dataclasses import dataclass, field

from docbatch.domain.kinds import DocumentKind
from docbatch.domain.models import CandidateFile

MAX_FILENAME_LENGTH = 255


@dataclass
class ValidationResult:
    """Outcome of validating one candidate file."""

    filename: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _format_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.0f}MB"


class FileValidator:
    """Checks candidate files against a kind's format, size, count and duplicate rules.

    Rules run in order and stop at the first failing one for each file:
    empty content, format, size ceiling, batch cap, duplicates. Invalid files
    are reported, never raised.
    """

    def validate(
        self,
        candidates: Sequence[CandidateFile],
        existing_batch: Sequence[CandidateFile],
        kind: DocumentKind,
    ) -> list[ValidationResult]:
        accepted: list[CandidateFile] = list(existing_batch)
        seen_names = {(f.filename, f.size_bytes) for f in accepted}
        seen_digests = {f.sha256 for f in accepted}
        results = []
        for candidate in candidates:
            result = ValidationResult(filename=candidate.filename)
            self._check(candidate, kind, len(accepted), seen_names, seen_digests, result)
            if result.is_valid:
                accepted.append(candidate)
                seen_names.add((candidate.filename, candidate.size_bytes))
                seen_digests.add(candidate.sha256)
            results.append(result)
        return results

    def _check(
        self,
        candidate: CandidateFile,
        kind: DocumentKind,
        accepted_count: int,
        seen_names: set[tuple[str, int]],
        seen_digests: set[str],
        result: ValidationResult,
    ) -> None:
        if candidate.size_bytes == 0:
            result.errors.append("File is empty")
            return

        if not kind.accepts_filename(candidate.filename):
            allowed = ", ".join(kind.extensions)
            result.errors.append(f"Only {allowed} files are accepted for {kind.label}")
            return
        if len(candidate.filename) > MAX_FILENAME_LENGTH:
            result.errors.append(
                f"Filename is longer than {MAX_FILENAME_LENGTH} characters"
            )
            return
        if not kind.accepts_media_type(candidate.media_type):
            result.warnings.append(
                f"Declared media type '{candidate.media_type}' does not match "
                f"{kind.label}; accepted by extension"
            )

        if candidate.size_bytes > kind.max_file_bytes:
            result.errors.append(
                f"File is too large ({_format_size(candidate.size_bytes)}). "
                f"Maximum is {_format_size(kind.max_file_bytes)}"
            )
            return

        if accepted_count + 1 > kind.batch_cap:
            result.errors.append(
                f"Batch already holds the maximum of {kind.batch_cap} files"
            )
            return

        if (candidate.filename, candidate.size_bytes) in seen_names:
            result.errors.append("Duplicate file: same name and size already in the batch")
        elif candidate.sha256 in seen_digests:
            result.errors.append("Duplicate file: identical content already in the batch")
