from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from docbatch.domain.kinds import DocumentKind
from docbatch.domain.models import AdmittedFile, ProcessingRecord

CALLBACK_PATH = "/callbacks/processing"


def callback_url(public_base_url: str) -> str:
    return public_base_url.rstrip("/") + CALLBACK_PATH


def build_payload(
    record: ProcessingRecord,
    kind: DocumentKind,
    files: Sequence[AdmittedFile],
    public_base_url: str,
    submitted_at: datetime | None = None,
) -> dict[str, Any]:
    """Build the single JSON body sent to the worker for one batch.

    Files keep the record's order; each carries its content under the kind's
    ``content_field`` (``pdf_base64`` or ``txt_base64``).
    """
    by_id = {admitted.record.id: admitted for admitted in files}
    ordered = [by_id[file_id] for file_id in record.file_ids if file_id in by_id]
    submitted_at = submitted_at or datetime.now(timezone.utc)
    return {
        "processing_id": record.id,
        "batch_context": record.batch_context,
        "kind": kind.code,
        "worker_kind": kind.worker_code,
        "period": record.period,
        "callback_url": callback_url(public_base_url),
        "submitted_at": submitted_at.isoformat(),
        "initiated_by": record.initiated_by,
        "files": [
            {
                "id": admitted.record.id,
                "filename": admitted.record.original_filename,
                "size_bytes": admitted.record.size_bytes,
                kind.content_field: admitted.encoded_content,
            }
            for admitted in ordered
        ],
    }
