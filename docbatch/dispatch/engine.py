import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from docbatch.config.settings import Settings
from docbatch.dispatch.client import WorkerClient
from docbatch.dispatch.payload import build_payload
from docbatch.domain.exceptions import (
    PermanentDispatchError,
    StateError,
    TransientDispatchError,
)
from docbatch.domain.kinds import KindRegistry
from docbatch.domain.models import AdmittedFile, ProcessingRecord
from docbatch.domain.state import ERROR, PENDING, PROCESSING, ProcessingPatch
from docbatch.logging.logger import Log
from docbatch.processing.manager import ProcessingRecordManager
from docbatch.reconcile.reconciler import Reconciler
from docbatch.reconcile.reply import WorkerReply, parse_worker_reply

CANCELLED_MESSAGE = "Dispatch cancelled"


@dataclass(frozen=True)
class DispatchOutcome:
    processing_id: str
    accepted: bool
    attempts: int
    record: ProcessingRecord
    error: str | None = None
    reply: WorkerReply | None = None


class DispatchEngine:
    """Send one batch to the worker, retry transient failures, and record the result."""

    def __init__(
        self,
        manager: ProcessingRecordManager,
        client: WorkerClient,
        reconciler: Reconciler,
        kinds: KindRegistry,
        settings: Settings,
    ) -> None:
        self._manager = manager
        self._client = client
        self._reconciler = reconciler
        self._kinds = kinds
        self._settings = settings

    def dispatch(
        self,
        record: ProcessingRecord,
        admitted_files: Sequence[AdmittedFile],
    ) -> DispatchOutcome:
        """Deliver the batch and leave the record in processing, completed or error."""
        attempts = 0
        try:
            kind = self._kinds.get(record.kind)
            payload = build_payload(
                record, kind, admitted_files, self._settings.public_base_url
            )
            Log.info(
                f"Dispatching processing {record.id} ({len(payload['files'])} file(s)) "
                f"to {self._settings.worker_endpoint}"
            )
            response, attempts, error = self._deliver(record.id, payload)
            if response is None:
                failed = self._fail(record.id, error or "Dispatch failed", attempts)
                return DispatchOutcome(record.id, False, attempts, failed, error=error)

            reply = parse_worker_reply(response.text)
            if not reply.accepted:
                message = reply.error_message or "Worker rejected the batch"
                failed = self._fail(record.id, message, attempts, reply.body)
                return DispatchOutcome(
                    record.id, False, attempts, failed, error=message, reply=reply
                )

            accepted = self._accept(record.id, reply)
            self._manager.append_log(
                record.id,
                "info",
                f"Batch accepted by the worker after {attempts} attempt(s)",
                {"attempts": attempts, "response": reply.body},
            )
            Log.info(f"Processing {record.id} accepted by worker")

            if reply.result_ref and not accepted.is_terminal:
                accepted = self._reconciler.reconcile_reply(accepted, reply)
            return DispatchOutcome(record.id, True, attempts, accepted, reply=reply)
        except Exception as exc:
            Log.exception(f"Unexpected failure dispatching processing {record.id}")
            self._fail(record.id, f"Unexpected dispatch failure: {exc}", attempts)
            raise

    def _accept(self, processing_id: str, reply: WorkerReply) -> ProcessingRecord:
        """Move the record to processing unless a worker callback already moved it further."""
        current = self._manager.require(processing_id)
        if current.is_terminal:
            Log.info(
                f"Processing {processing_id} already {current.status} before the worker reply"
            )
            return current
        patch = ProcessingPatch(
            status=PROCESSING,
            progress=max(current.progress, self._settings.dispatch_progress_floor),
            estimated_time_minutes=reply.estimated_time_minutes,
            worker_response=reply.body,
        )
        try:
            return self._manager.update(processing_id, patch)
        except StateError:
            latest = self._manager.require(processing_id)
            if latest.status == PENDING:
                raise
            Log.info(
                f"Processing {processing_id} advanced to {latest.status} "
                f"({latest.progress}%) while the worker reply was handled"
            )
            return latest

    def _deliver(
        self,
        processing_id: str,
        payload: dict[str, Any],
    ) -> tuple[httpx.Response | None, int, str | None]:
        """Run the retry loop. Returns (response, attempts, last error)."""
        max_attempts = max(1, self._settings.dispatch_max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._client.post_batch(payload), attempt, None
            except PermanentDispatchError as exc:
                Log.error(f"Processing {processing_id}: worker refused the batch: {exc}")
                return None, attempt, str(exc)
            except TransientDispatchError as exc:
                if attempt >= max_attempts:
                    Log.error(
                        f"Processing {processing_id}: giving up after {attempt} attempts: {exc}"
                    )
                    return None, attempt, str(exc)
                delay = self._settings.dispatch_backoff_base_seconds * 2 ** (attempt - 1)
                Log.warning(
                    f"Processing {processing_id}: attempt {attempt}/{max_attempts} failed "
                    f"({exc}), retrying in {delay:.1f}s"
                )
                time.sleep(delay)

            current = self._manager.get(processing_id)
            if current is not None and current.cancel_requested:
                Log.info(f"Processing {processing_id}: cancellation requested, stopping retries")
                return None, attempt, CANCELLED_MESSAGE

    def _fail(
        self,
        processing_id: str,
        message: str,
        attempts: int,
        worker_response: dict[str, Any] | None = None,
    ) -> ProcessingRecord:
        try:
            failed = self._manager.update(
                processing_id,
                ProcessingPatch(
                    status=ERROR,
                    error_message=message,
                    worker_response=worker_response,
                ),
            )
        except StateError as exc:
            Log.warning(f"Could not mark processing {processing_id} as failed: {exc}")
            return self._manager.require(processing_id)

        self._manager.append_log(
            processing_id,
            "error",
            f"Dispatch failed after {attempts} attempt(s): {message}",
            {"attempts": attempts},
        )
        return failed
