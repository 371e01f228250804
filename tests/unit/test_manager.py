import pytest

from docbatch.domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateDispatchError,
    ProcessingNotFoundError,
    StateError,
    ValidationError,
)
from docbatch.domain.kinds import KindRegistry
from docbatch.domain.state import ProcessingPatch
from docbatch.processing.manager import ProcessingRecordManager


def _create(manager: ProcessingRecordManager, kinds: KindRegistry, file_ids, kind="payslip") -> str:
    return manager.create(
        batch_context="acct-1",
        kind=kinds.get(kind),
        period="03/2024",
        file_ids=file_ids,
        initiated_by="user-7",
    )


class TestCreate:
    def test_creates_pending_record(self, manager, kinds, seed_files) -> None:
        file_ids = seed_files(3)
        processing_id = _create(manager, kinds, file_ids)

        record = manager.require(processing_id)
        assert record.status == "pending"
        assert record.progress == 0
        assert record.version == 1
        assert record.file_ids == tuple(file_ids)
        assert record.initiated_by == "user-7"

    def test_rejects_empty(self, manager, kinds) -> None:
        with pytest.raises(ValidationError, match="at least one file"):
            _create(manager, kinds, [])

    def test_rejects_over_cap(self, manager, kinds, seed_files) -> None:
        file_ids = seed_files(13, kind="sped_icms_ipi")
        with pytest.raises(ValidationError, match="at most 12"):
            _create(manager, kinds, file_ids, kind="sped_icms_ipi")

    def test_rejects_unknown_file(self, manager, kinds, seed_files) -> None:
        with pytest.raises(ValidationError):
            _create(manager, kinds, [*seed_files(1), "00000000-0000-0000-0000-000000000000"])

    def test_refuses_files_of_active_record(self, manager, kinds, seed_files) -> None:
        file_ids = seed_files(2)
        _create(manager, kinds, file_ids)
        with pytest.raises(DuplicateDispatchError):
            _create(manager, kinds, file_ids[:1])

    def test_allows_files_of_finished_record(self, manager, kinds, seed_files) -> None:
        file_ids = seed_files(1)
        first = _create(manager, kinds, file_ids)
        manager.update(first, ProcessingPatch(status="error", error_message="boom"))

        second = _create(manager, kinds, file_ids)
        assert second != first


class TestUpdate:
    def test_applies_patch_and_bumps_version(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        record = manager.update(
            processing_id,
            ProcessingPatch(status="processing", progress=10, estimated_time_minutes=4),
        )
        assert record.status == "processing"
        assert record.progress == 10
        assert record.estimated_time_minutes == 4
        assert record.version == 2

    def test_invalid_patch_leaves_record_untouched(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        manager.update(processing_id, ProcessingPatch(status="processing", progress=50))

        with pytest.raises(StateError):
            manager.update(processing_id, ProcessingPatch(progress=20))

        record = manager.require(processing_id)
        assert record.progress == 50
        assert record.version == 2

    def test_repeated_terminal_is_noop(self, manager, kinds, seed_files, processing_repo) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        done = manager.update(
            processing_id, ProcessingPatch(status="completed", result_url="https://r/x")
        )
        calls = processing_repo.cas_calls

        again = manager.update(
            processing_id, ProcessingPatch(status="completed", result_url="https://r/x")
        )
        assert again == done
        assert processing_repo.cas_calls == calls

    def test_retries_lost_race(self, manager, kinds, seed_files, processing_repo) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        processing_repo.lose_next_writes = 2

        record = manager.update(processing_id, ProcessingPatch(status="processing", progress=10))

        assert record.status == "processing"
        assert processing_repo.cas_calls == 3

    def test_gives_up_after_three_lost_races(
        self, manager, kinds, seed_files, processing_repo
    ) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        processing_repo.lose_next_writes = 3

        with pytest.raises(ConcurrentUpdateError):
            manager.update(processing_id, ProcessingPatch(status="processing", progress=10))

    def test_unknown_record(self, manager) -> None:
        with pytest.raises(ProcessingNotFoundError):
            manager.update("missing", ProcessingPatch(progress=10))


class TestFilePropagation:
    def test_files_follow_batch(self, manager, kinds, seed_files, file_repo) -> None:
        file_ids = seed_files(2)
        processing_id = _create(manager, kinds, file_ids)

        manager.update(processing_id, ProcessingPatch(status="processing", progress=10))
        assert {file_repo.rows[i].status for i in file_ids} == {"processing"}

        manager.update(processing_id, ProcessingPatch(status="completed", result_url="https://r/x"))
        files = manager.files_for(processing_id)
        assert [f.status for f in files] == ["completed", "completed"]
        assert files[0].result_ref == "https://r/x"
        assert files[0].processed_at is not None

    def test_failure_marks_files_failed(self, manager, kinds, seed_files, file_repo) -> None:
        file_ids = seed_files(1)
        processing_id = _create(manager, kinds, file_ids)
        manager.update(processing_id, ProcessingPatch(status="error", error_message="boom"))
        assert file_repo.rows[file_ids[0]].status == "error"
        assert file_repo.rows[file_ids[0]].error_message == "boom"


class TestLogsAndCancel:
    def test_append_and_list_logs(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        manager.append_log(processing_id, "info", "accepted", {"attempts": 1})

        [entry] = manager.logs(processing_id)
        assert entry.message == "accepted"
        assert entry.metadata == {"attempts": 1}
        assert manager.find_log(entry.id) == entry

    def test_rejects_unknown_level(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        with pytest.raises(ValidationError):
            manager.append_log(processing_id, "fatal", "nope")

    def test_request_cancel_flags_active_record(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        assert manager.request_cancel(processing_id) is True
        assert manager.require(processing_id).cancel_requested

    def test_request_cancel_ignores_finished_record(self, manager, kinds, seed_files) -> None:
        processing_id = _create(manager, kinds, seed_files(1))
        manager.update(processing_id, ProcessingPatch(status="error", error_message="boom"))
        assert manager.request_cancel(processing_id) is False
