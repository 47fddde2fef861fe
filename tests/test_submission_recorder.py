"""Tests for the submission recorder and repositories."""

import pytest

from customs_portal.core.errors import PortalRejection, RecordFinalizedError, SubmissionError
from customs_portal.core.models import DecisionEntry, ErrorEntry, SubmissionStatus
from customs_portal.workflow.recorder import (
    InMemorySubmissionRepository,
    JsonFileSubmissionRepository,
    SubmissionRecorder,
)


class TestSubmissionRecorder:
    """Test cases for SubmissionRecorder."""

    @pytest.fixture
    def repository(self):
        return InMemorySubmissionRepository()

    @pytest.fixture
    def recorder(self, repository):
        return SubmissionRecorder(repository)

    @pytest.mark.asyncio
    async def test_every_mutation_is_persisted(self, recorder, repository):
        record = await recorder.start("CAPS", "DEC-001")
        await recorder.add_screenshot("/tmp/01-login.png", "logging_in", "login")
        await recorder.add_warning("Optional field 'Carrier' skipped")

        stored = await repository.get(record.id)

        assert stored.status == SubmissionStatus.PENDING
        assert stored.screenshots[0].state == "logging_in"
        assert stored.warnings == ["Optional field 'Carrier' skipped"]
        assert stored.log[-1].level == "warning"

    @pytest.mark.asyncio
    async def test_logs_keep_append_order(self, recorder):
        await recorder.start("CAPS", "DEC-001")
        await recorder.add_recovered_error(ErrorEntry(code="selector_not_found", message="a", attempt=1))
        await recorder.add_recovered_error(ErrorEntry(code="unexpected_dialog", message="b", attempt=2))
        await recorder.add_decision(
            DecisionEntry(step="fill", attempt=1, situation="s", action="wait_and_retry", details={"wait_ms": 500})
        )

        assert [e.code for e in recorder.record.errors_recovered] == ["selector_not_found", "unexpected_dialog"]
        assert recorder.record.decisions[0].details == {"wait_ms": 500}

    @pytest.mark.asyncio
    async def test_finalize_success(self, recorder, repository):
        record = await recorder.start("CAPS", "DEC-001")

        final = await recorder.finalize_success("TD12345")

        stored = await repository.get(record.id)
        assert final.is_successful
        assert stored.external_reference == "TD12345"
        assert stored.completed_at is not None
        assert stored.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_failure_keeps_error_verbatim(self, recorder):
        await recorder.start("CAPS", "DEC-001")
        error = PortalRejection("td_entry", "Invalid CPC code 4000")

        final = await recorder.finalize_failure(error)

        assert final.status == SubmissionStatus.FAILED
        assert final.error_code == "portal_rejection"
        assert final.error_message == error.message

    @pytest.mark.asyncio
    async def test_finalized_record_is_frozen(self, recorder):
        await recorder.start("CAPS", "DEC-001")
        await recorder.finalize_success("TD1")

        with pytest.raises(RecordFinalizedError):
            await recorder.add_log("late message")
        with pytest.raises(RecordFinalizedError):
            await recorder.finalize_failure(SubmissionError("late failure"))

    @pytest.mark.asyncio
    async def test_unstarted_recorder_rejects_mutation(self, recorder):
        with pytest.raises(SubmissionError):
            await recorder.add_log("nothing to log to")

    @pytest.mark.asyncio
    async def test_repository_returns_copies(self, recorder, repository):
        record = await recorder.start("CAPS", "DEC-001")

        fetched = await repository.get(record.id)
        fetched.warnings.append("tampered")

        assert (await repository.get(record.id)).warnings == []


class TestJsonFileSubmissionRepository:
    """Test cases for the JSON file repository."""

    @pytest.mark.asyncio
    async def test_records_survive_a_new_repository(self, tmp_path):
        recorder = SubmissionRecorder(JsonFileSubmissionRepository(tmp_path))
        record = await recorder.start("CAPS", "DEC-001", retry_count=1)
        await recorder.add_screenshot(None, "failed", "td_entry")
        await recorder.finalize_success("TD777")

        reopened = JsonFileSubmissionRepository(tmp_path)
        stored = await reopened.get(record.id)

        assert stored.external_reference == "TD777"
        assert stored.retry_count == 1
        assert stored.screenshots[0].path is None
        assert [r.id for r in await reopened.list("CAPS")] == [record.id]
        assert await reopened.list("OTHER") == []
        assert not list(tmp_path.glob("*.tmp"))
