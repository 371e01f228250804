import json
from unittest.mock import patch

import httpx
import pytest

from docbatch.dispatch.client import WorkerClient, compute_signature
from docbatch.dispatch.engine import DispatchEngine
from docbatch.ingestion.admission import FileAdmitter
from docbatch.reconcile.artifacts import ArtifactFetcher
from docbatch.reconcile.reconciler import CallbackUpdate, Reconciler


class Worker:
    """Scripted worker endpoint for httpx.MockTransport."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def submit(settings, kinds, manager, file_repo, make_pdf):
    """Admit two payslips, create their record and dispatch it against a scripted worker."""

    def _submit(worker: Worker, artifact_handler=None, cancel_after_first=False):
        admitted = FileAdmitter(file_repo).admit_all(
            [make_pdf("jan.pdf"), make_pdf("feb.pdf")],
            batch_context="acct-1",
            kind=kinds.get("payslip"),
            period="03/2024",
            uploaded_by="user-7",
        ).admitted
        processing_id = manager.create(
            batch_context="acct-1",
            kind=kinds.get("payslip"),
            period="03/2024",
            file_ids=[a.record.id for a in admitted],
            initiated_by="user-7",
        )

        def worker_with_cancel(request: httpx.Request) -> httpx.Response:
            response = worker(request)
            if cancel_after_first:
                manager.request_cancel(processing_id)
            return response

        client = WorkerClient(settings, httpx.Client(transport=httpx.MockTransport(worker_with_cancel)))
        fetcher = ArtifactFetcher(
            settings,
            httpx.Client(transport=httpx.MockTransport(artifact_handler or (lambda r: httpx.Response(404)))),
        )
        engine = DispatchEngine(manager, client, Reconciler(manager, fetcher, settings), kinds, settings)
        with patch("docbatch.dispatch.engine.time.sleep") as mock_sleep:
            outcome = engine.dispatch(manager.require(processing_id), admitted)
        return outcome, mock_sleep

    return _submit


class TestAcceptance:
    def test_empty_body_is_implicit_acceptance(self, submit, manager) -> None:
        worker = Worker(httpx.Response(200, content=b""))
        outcome, _sleep = submit(worker)

        assert outcome.accepted
        assert outcome.attempts == 1
        record = manager.require(outcome.processing_id)
        assert record.status == "processing"
        assert record.progress == 10
        [entry] = manager.logs(outcome.processing_id)
        assert entry.level == "info"
        assert entry.metadata["response"]["status"] == "accepted"

    def test_records_estimate_and_response(self, submit, manager) -> None:
        worker = Worker(httpx.Response(200, json={"success": True, "estimated_time": 7}))
        outcome, _sleep = submit(worker)

        record = manager.require(outcome.processing_id)
        assert record.estimated_time_minutes == 7
        assert record.worker_response == {"success": True, "estimated_time": 7}

    def test_files_move_to_processing(self, submit, manager) -> None:
        outcome, _sleep = submit(Worker(httpx.Response(202)))
        files = manager.files_for(outcome.processing_id)
        assert {f.status for f in files} == {"processing"}


class TestPayload:
    def test_sends_one_signed_request(self, submit, settings, monkeypatch) -> None:
        monkeypatch.setattr(settings, "worker_secret", "s3cret")
        worker = Worker(httpx.Response(200))
        outcome, _sleep = submit(worker)

        [request] = worker.requests
        body = json.loads(request.content)
        assert body["processing_id"] == outcome.processing_id
        assert body["kind"] == "payslip"
        assert body["worker_kind"] == "FOLHA_PAGAMENTO"
        assert body["period"] == "03/2024"
        assert body["callback_url"] == "https://docbatch.test/callbacks/processing"
        assert [f["filename"] for f in body["files"]] == ["jan.pdf", "feb.pdf"]
        assert all("pdf_base64" in f for f in body["files"])
        assert request.headers["X-Webhook-Signature"] == compute_signature(request.content, "s3cret")
        assert request.headers["User-Agent"].startswith("docbatch/")

    def test_no_signature_without_secret(self, submit) -> None:
        worker = Worker(httpx.Response(200))
        submit(worker)
        assert "X-Webhook-Signature" not in worker.requests[0].headers


class TestRetries:
    def test_three_server_errors_fail_the_batch(self, submit, manager) -> None:
        worker = Worker(httpx.Response(500, text="upstream exploded"))
        outcome, mock_sleep = submit(worker)

        assert not outcome.accepted
        assert outcome.attempts == 3
        assert len(worker.requests) == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0]
        record = manager.require(outcome.processing_id)
        assert record.status == "error"
        assert record.error_message == "Worker responded 500 Internal Server Error: upstream exploded"
        [entry] = manager.logs(outcome.processing_id)
        assert entry.level == "error"
        assert entry.metadata == {"attempts": 3}

    def test_recovers_after_transient_error(self, submit, manager) -> None:
        worker = Worker(httpx.ConnectError("refused"), httpx.Response(200))
        outcome, mock_sleep = submit(worker)

        assert outcome.accepted
        assert outcome.attempts == 2
        mock_sleep.assert_called_once_with(2.0)
        assert manager.require(outcome.processing_id).status == "processing"

    def test_client_error_is_not_retried(self, submit, manager) -> None:
        worker = Worker(httpx.Response(422, json={"message": "bad period"}))
        outcome, mock_sleep = submit(worker)

        assert outcome.attempts == 1
        mock_sleep.assert_not_called()
        record = manager.require(outcome.processing_id)
        assert record.status == "error"
        assert record.error_message.startswith("Worker responded 422")

    def test_cancel_stops_retries(self, submit, manager) -> None:
        worker = Worker(httpx.Response(503))
        outcome, _sleep = submit(worker, cancel_after_first=True)

        assert len(worker.requests) == 1
        record = manager.require(outcome.processing_id)
        assert record.status == "error"
        assert record.error_message == "Dispatch cancelled"


class TestRejection:
    def test_success_false_is_rejection(self, submit, manager) -> None:
        worker = Worker(httpx.Response(200, json={"success": False, "error": "unsupported kind"}))
        outcome, _sleep = submit(worker)

        assert not outcome.accepted
        record = manager.require(outcome.processing_id)
        assert record.status == "error"
        assert record.error_message == "unsupported kind"
        assert record.worker_response == {"success": False, "error": "unsupported kind"}


class TestSynchronousResult:
    def test_reply_with_artifact_completes(self, submit, manager, settings) -> None:
        url = "https://results.example.com/out/folha_03_2024.xlsx"
        worker = Worker(
            httpx.Response(200, json={"success": True, "data": {"excel_url": url}})
        )
        outcome, _sleep = submit(
            worker, artifact_handler=lambda r: httpx.Response(200, content=b"xlsx-bytes")
        )

        record = manager.require(outcome.processing_id)
        assert record.status == "completed"
        assert record.progress == 100
        assert record.result_url == url
        stored = settings.results_root / "acct-1" / record.id / "folha_03_2024.xlsx"
        assert stored.read_bytes() == b"xlsx-bytes"

    def test_download_failure_keeps_processing(self, submit, manager) -> None:
        url = "https://results.example.com/out/folha.xlsx"
        worker = Worker(httpx.Response(200, json={"success": True, "excelUrl": url}))
        outcome, _sleep = submit(worker, artifact_handler=lambda r: httpx.Response(403))

        record = manager.require(outcome.processing_id)
        assert record.status == "processing"
        assert record.progress == 85
        assert record.result_ref == url
        assert record.error_message.startswith(
            "Processing finished upstream but the result could not be downloaded"
        )


class EarlyCallbackWorker(Worker):
    """Worker that reports progress through the callback before its HTTP reply arrives."""

    def __init__(self, manager, settings, update: dict, reply: httpx.Response) -> None:
        super().__init__(reply)
        fetcher = ArtifactFetcher(
            settings, httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        )
        self.reconciler = Reconciler(manager, fetcher, settings)
        self.update = update

    def __call__(self, request: httpx.Request) -> httpx.Response:
        processing_id = json.loads(request.content)["processing_id"]
        self.reconciler.apply_callback(CallbackUpdate(processing_id, **self.update))
        return super().__call__(request)


class TestCallbackBeforeReply:
    def test_progress_ahead_of_the_floor_is_kept(self, submit, manager, settings) -> None:
        worker = EarlyCallbackWorker(
            manager,
            settings,
            {"status": "processing", "progress": 40},
            httpx.Response(200, json={"success": True, "estimated_time": 5}),
        )
        outcome, _sleep = submit(worker)

        assert outcome.accepted
        record = manager.require(outcome.processing_id)
        assert record.status == "processing"
        assert record.progress == 40
        assert record.estimated_time_minutes == 5
        assert [e.level for e in manager.logs(outcome.processing_id)] == ["info", "info"]

    def test_completion_before_reply_stays_completed(self, submit, manager, settings) -> None:
        worker = EarlyCallbackWorker(
            manager,
            settings,
            {"status": "completed", "progress": 100},
            httpx.Response(200, content=b""),
        )
        outcome, _sleep = submit(worker)

        assert outcome.accepted
        assert outcome.record.status == "completed"
        record = manager.require(outcome.processing_id)
        assert record.status == "completed"
        assert all(e.level != "error" for e in manager.logs(outcome.processing_id))
