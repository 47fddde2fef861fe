"""Submission Recorder: the append-only audit trail of one submission attempt."""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union
from uuid import UUID

from customs_portal.core.errors import RecordFinalizedError, SubmissionError
from customs_portal.core.models import (
    DecisionEntry,
    ErrorEntry,
    LogEntry,
    ScreenshotEntry,
    SubmissionRecord,
    SubmissionStatus,
    utc_now,
)
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)


class SubmissionRepository(ABC):
    """Persistence for submission records."""

    @abstractmethod
    async def save(self, record: SubmissionRecord) -> None:
        ...

    @abstractmethod
    async def get(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        ...

    @abstractmethod
    async def list(self, target_code: Optional[str] = None) -> List[SubmissionRecord]:
        ...


class InMemorySubmissionRepository(SubmissionRepository):
    """Keeps records in a dict; used by tests and the CLI."""

    def __init__(self):
        self._records: Dict[UUID, SubmissionRecord] = {}

    async def save(self, record: SubmissionRecord) -> None:
        self._records[record.id] = record.model_copy(deep=True)

    async def get(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        record = self._records.get(submission_id)
        return record.model_copy(deep=True) if record else None

    async def list(self, target_code: Optional[str] = None) -> List[SubmissionRecord]:
        records = [r for r in self._records.values() if target_code is None or r.target_code == target_code]
        return [r.model_copy(deep=True) for r in sorted(records, key=lambda r: r.started_at)]


class JsonFileSubmissionRepository(SubmissionRepository):
    """One JSON document per record under a directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.logger = logger.bind(component="submission_repository")

    def _path(self, submission_id: UUID) -> Path:
        return self.directory / f"{submission_id}.json"

    async def save(self, record: SubmissionRecord) -> None:
        path = self._path(record.id)
        payload = record.model_dump_json(indent=2)
        await asyncio.to_thread(self._write, path, payload)

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        temporary = path.with_suffix(".json.tmp")
        temporary.write_text(payload, encoding="utf-8")
        temporary.replace(path)

    async def get(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        path = self._path(submission_id)
        if not path.exists():
            return None
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return SubmissionRecord.model_validate_json(text)

    async def list(self, target_code: Optional[str] = None) -> List[SubmissionRecord]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = SubmissionRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
            if target_code is None or record.target_code == target_code:
                records.append(record)
        return sorted(records, key=lambda r: r.started_at)


class SubmissionRecorder:
    """
    Owns one SubmissionRecord from ``start`` to finalization.

    Every mutation is persisted immediately so an in-progress submission can be
    inspected. Once finalized, the record is frozen and further mutation raises
    ``RecordFinalizedError``.
    """

    def __init__(self, repository: SubmissionRepository):
        self.repository = repository
        self.record: Optional[SubmissionRecord] = None
        self.logger = logger.bind(component="submission_recorder")

    async def start(
        self,
        target_code: str,
        declaration_id: str,
        retry_count: int = 0,
        parent_id: Optional[UUID] = None,
        submission_id: Optional[UUID] = None,
    ) -> SubmissionRecord:
        record = SubmissionRecord(
            target_code=target_code,
            declaration_id=declaration_id,
            retry_count=retry_count,
            parent_id=parent_id,
        )
        if submission_id is not None:
            record.id = submission_id
        self.record = record
        record.log.append(LogEntry(message=f"Submission started for declaration {declaration_id}"))
        await self.repository.save(record)
        self.logger.info(
            "Submission record created",
            submission_id=str(record.id),
            target=target_code,
            declaration_id=declaration_id,
            retry_count=retry_count,
        )
        return record

    def _mutable(self) -> SubmissionRecord:
        if self.record is None:
            raise SubmissionError("Recorder has not been started")
        if self.record.is_final:
            raise RecordFinalizedError(
                f"Submission {self.record.id} is already {self.record.status.value}",
                submission_id=str(self.record.id),
            )
        return self.record

    async def add_screenshot(self, path: Optional[str], state: str, page: Optional[str] = None) -> None:
        record = self._mutable()
        record.screenshots.append(ScreenshotEntry(path=path, state=state, page=page))
        await self.repository.save(record)

    async def add_decision(self, decision: DecisionEntry) -> None:
        record = self._mutable()
        record.decisions.append(decision)
        await self.repository.save(record)

    async def add_recovered_error(self, error: ErrorEntry) -> None:
        record = self._mutable()
        record.errors_recovered.append(error)
        await self.repository.save(record)

    async def add_warning(self, warning: str) -> None:
        record = self._mutable()
        record.warnings.append(warning)
        record.log.append(LogEntry(level="warning", message=warning))
        await self.repository.save(record)

    async def add_log(self, message: str, level: str = "info") -> None:
        record = self._mutable()
        record.log.append(LogEntry(level=level, message=message))
        await self.repository.save(record)

    async def finalize_success(self, external_reference: Optional[str], message: Optional[str] = None) -> SubmissionRecord:
        record = self._mutable()
        record.external_reference = external_reference
        record.message = message or "Submission completed successfully"
        record.log.append(LogEntry(message=record.message))
        self._close(record, SubmissionStatus.SUCCESS)
        await self.repository.save(record)
        self.logger.info(
            "Submission succeeded",
            submission_id=str(record.id),
            external_reference=external_reference,
            duration_seconds=record.duration_seconds,
        )
        return record

    async def finalize_failure(self, error: SubmissionError, missing_fields: Optional[List[Dict]] = None) -> SubmissionRecord:
        """Freeze the record as failed, storing the originating error verbatim."""
        record = self._mutable()
        record.error_code = error.code
        record.error_message = error.message
        record.message = error.message
        if missing_fields:
            record.missing_fields = list(missing_fields)
        record.log.append(LogEntry(level="error", message=error.message))
        self._close(record, SubmissionStatus.FAILED)
        await self.repository.save(record)
        self.logger.warning(
            "Submission failed",
            submission_id=str(record.id),
            error_code=error.code,
            error=error.message,
            duration_seconds=record.duration_seconds,
        )
        return record

    @staticmethod
    def _close(record: SubmissionRecord, status: SubmissionStatus) -> None:
        record.status = status
        record.completed_at = utc_now()
        record.duration_seconds = round((record.completed_at - record.started_at).total_seconds(), 3)
